from __future__ import annotations


class BulkEnrichError(Exception):
    code = "error"
    http_status = 500

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class NotFound(BulkEnrichError):
    code = "not_found"
    http_status = 404


class Unauthorized(BulkEnrichError):
    code = "unauthorized"
    http_status = 401


class Forbidden(BulkEnrichError):
    code = "forbidden"
    http_status = 403


class InvalidFilter(BulkEnrichError):
    code = "invalid_filter"
    http_status = 400


class CompletionError(BulkEnrichError):
    code = "upstream_error"
    http_status = 502


class RateLimited(CompletionError):
    code = "rate_limited"
    http_status = 429


class PaymentRequired(CompletionError):
    code = "payment_required"
    http_status = 402


class UpstreamError(CompletionError):
    code = "upstream_error"


class MalformedResponse(CompletionError):
    code = "malformed_response"


class StoreError(BulkEnrichError):
    code = "store_error"


class OrchestrationError(BulkEnrichError):
    code = "orchestration_error"
