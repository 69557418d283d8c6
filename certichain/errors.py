class CertiChainError(Exception):
    """Base class for every error raised by certichain."""

    status_code = 500


class ConfigurationError(CertiChainError):
    pass


class BackendUnavailable(CertiChainError):
    """A certificate, anchor or activity backend could not be reached in time.

    Distinct from a missing record: callers should retry or surface the outage.
    """

    status_code = 503


class CertificateNotFound(CertiChainError):
    status_code = 404


class DuplicateAnchorError(CertiChainError):
    status_code = 409


class IssuanceError(CertiChainError):
    status_code = 500


class InvalidCertificateData(CertiChainError):
    status_code = 400


class InvalidIssueDate(InvalidCertificateData):
    pass


class UnauthorizedIssuer(CertiChainError):
    status_code = 403
