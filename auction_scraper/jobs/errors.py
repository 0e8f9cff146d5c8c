class ScrapeJobError(Exception):
    """Base error for a scrape job. The message is safe to show to the job owner."""


class CredentialsUnavailable(ScrapeJobError):
    """Raised when the job owner has no usable username/password."""


class DecryptionFailure(ScrapeJobError):
    """Raised when stored credentials cannot be decrypted."""


class AuthenticationFailure(ScrapeJobError):
    """Raised when login is rejected or no session token cookie is set."""


class ExtractionTimeout(ScrapeJobError):
    """Raised when a bounded wait is never satisfied or the job deadline fires."""


class RecordCountMismatch(ScrapeJobError):
    """Raised only when the mismatch policy is strict."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Record count mismatch: expected {expected} but scraped {actual}")
        self.expected = expected
        self.actual = actual


class PersistenceFailure(ScrapeJobError):
    """Raised when none of a job's listings could be written."""
