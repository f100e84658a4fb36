"""Exception taxonomy for the dongle link."""

# Substrings (lower-case) that mark a handshake failure as an AppKey mismatch.
KEY_MISMATCH_MARKERS = ("badmac", "bad mac", "sfin mismatch", "bad key")


def is_key_mismatch(message: str) -> bool:
    """Check whether a failure message indicates a stale or wrong AppKey."""
    lowered = message.lower()
    return any(marker in lowered for marker in KEY_MISMATCH_MARKERS)


class LinkError(Exception):
    """Base class for every failure surfaced by the link."""


class TransportError(LinkError):
    """Connect or write failed, the link dropped, or a write was oversized."""


class ProtocolFormatError(LinkError):
    """A frame had the wrong length, opcode or layout."""


class LinkTimeoutError(LinkError):
    """An awaited frame did not arrive within its timeout budget."""


class DeviceError(LinkError):
    """The dongle answered with an error frame (0xFF)."""

    def __init__(self, message: str, token: str = "") -> None:
        super().__init__(message)
        self.token = token


class AuthenticationError(LinkError):
    """Proof, MAC or server-finish verification failed."""

    def __init__(self, message: str, requires_reprovision: bool = False) -> None:
        super().__init__(message)
        self.requires_reprovision = requires_reprovision


class ProvisioningError(LinkError):
    """APPKEY provisioning did not complete."""


class ProvisioningCancelled(ProvisioningError):
    """The user declined the password prompt."""

    def __init__(self) -> None:
        super().__init__("Provision cancelled")


class SessionError(LinkError):
    """No secure session, or the session can no longer be used."""
