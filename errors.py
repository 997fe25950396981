class ExtractorError(Exception):
    """Base error for upstream lookups"""
    pass


class StreamNotFound(ExtractorError):
    """The stream is offline, unknown, or could not be located.

    `diagnostic` separates a genuinely offline stream from an upstream page or API
    shape we no longer recognise; both still surface to callers as 404.
    """

    OFFLINE = "offline"
    UNPLAYABLE = "unplayable"
    FORMAT_UNRECOGNISED = "format-unrecognised"
    UNREACHABLE = "unreachable"

    def __init__(self, reason: str, diagnostic: str = OFFLINE):
        super().__init__(reason)
        self.reason = reason
        self.diagnostic = diagnostic


class UpstreamError(ExtractorError):
    """Upstream could not be reached or answered with a non-success status"""

    def __init__(self, message: str, status: int = None):
        super().__init__(message)
        self.status = status


class BadRequest(Exception):
    """The inbound request is missing a required value or carries a malformed one"""
    pass
