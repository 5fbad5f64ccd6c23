"""Custom exception hierarchy for the Presensi application.

This module defines the base exception class and the specific error types
raised by the portal client, the credential store, and the scheduler.
"""


class PresensiError(Exception): ...


class InternalError(PresensiError):
    """Error caused by failure in app logic."""


class ConfigError(PresensiError):
    """Error caused by invalid user configuration."""


class PortalError(PresensiError):
    """Error caused by the SIMA portal or the connection to it."""


class PortalUnreachable(PortalError):
    """Network-level failure while talking to the portal."""


class SessionInvalid(PortalError):
    """The portal no longer honors the stored session."""


class ParseError(PortalError):
    """A portal page did not have the expected structure."""


class CaptchaParseError(PortalError):
    """OCR output could not be read as an arithmetic expression."""

    def __init__(self, text: str):
        super().__init__(f"Failed to parse CAPTCHA: {text!r}")
        self.text = text


class LoginFailed(PortalError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class LoginTimeout(PortalError):
    def __init__(self, elapsed: float, budget: float):
        super().__init__(f"Login did not finish within {budget:.0f}s (elapsed {elapsed:.1f}s)")
        self.elapsed = elapsed
        self.budget = budget


class VerificationUnresolved(PresensiError):
    """Check-in was sent but the roster never showed it. Not a failure."""


class StoreError(PresensiError): ...


class EncryptionError(StoreError): ...


class DecryptionError(StoreError):
    """Envelope is corrupted, tampered with, or encrypted under another key."""


class AccountNotFound(StoreError):
    def __init__(self, account_id: str):
        super().__init__(f"Account not found: {account_id}")
        self.account_id = account_id
