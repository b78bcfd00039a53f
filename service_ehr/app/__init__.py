"""
Patient EHR service package for the Patient EHR Access Layer.

The service fronts clinical records and the remote security service,
enforcing:
- Authentication: bearer JWTs verified locally
- Authorization: roles resolved through the security service
- Caching: namespaced TTL cache with invalidate-on-write
- Resilience: de-duplicated, retried outbound calls

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.adapters: HTTP clients for the security service.
- app.caching: Namespaced cache, key layout and invalidation.
- app.domain: Request context and authentication.
- app.persistence: Record store contract and in-memory store.
- app.repositories: Patients, diagnostics, medical histories, documents.
"""
