from __future__ import annotations


class ExtractionError(RuntimeError):
    """Base for failures of a single extraction attempt.

    `code` is persisted on the job so transient upstream problems can be told
    apart from permanent ones.
    """

    code = "extraction_error"
    retryable = False


class UpstreamUnavailable(ExtractionError):
    code = "upstream_unavailable"
    retryable = True


class UpstreamRateLimited(ExtractionError):
    code = "upstream_rate_limited"
    retryable = True


class MalformedResponse(ExtractionError):
    code = "malformed_response"


class EmptyDocument(ExtractionError):
    code = "empty_document"


class UnsupportedDocument(ExtractionError):
    code = "unsupported_document"
