"""
Shared utilities for the Patient EHR Access Layer.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry policies with linear/exponential backoff
- base_service: FastAPI service shell (health, metrics, error handlers)

Do not import from service packages into shared/.
"""
