"""
Core Application - Infrastructure & Base Classes

Generic building blocks shared by the clinic and billing apps. Nothing in
here knows about payments or subscriptions.

Models (import from core.models):
    - BaseModel: Abstract model with timestamps (created_at, updated_at)

Model Mixins (import from core.model_mixins):
    - UUIDPrimaryKeyMixin: UUID as primary key
    - VersionedMixin: Optimistic version counter

Services (import from core.services):
    - BaseService: Base class for service layer
    - ServiceResult: Standard result wrapper for success/failure handling

Exceptions (import from core.exceptions):
    - BaseApplicationError and its subclasses (ValidationError,
      NotFoundError, ConflictError, ExternalServiceError,
      ConfigurationError, ...)

Error responses (import from core.exception_handler):
    - ERROR_STATUS_TABLE: error kind to HTTP status
    - api_exception_handler: DRF EXCEPTION_HANDLER

Resilience (import from core.circuit_breaker):
    - CircuitBreaker: Cache-backed circuit breaker
"""
