"""
Service layer for platform connections.

This package contains:
- Authorization state storage and PKCE generation
- The client-side authorization flow controller
- Token health classification and background refresh
- HTTP token endpoint executors
"""
