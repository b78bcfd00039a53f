"""
Domain utilities for the EHR Service.

Includes the per-request credential context and the authentication
middleware that populates it.
"""
