"""Exception types raised by update checkers and appliers."""


class UpdaterError(Exception):
    """Base class for updater failures."""


class CommandFailed(UpdaterError):
    """An external or privileged command exited unsuccessfully."""

    def __init__(self, output: str, command: str | None = None):
        self.output = output
        self.command = command
        super().__init__(output.strip() or f"Command failed: {command}")


class HomebrewError(UpdaterError):
    pass


class LookupDecodeError(UpdaterError):
    """A JSON response did not match the expected schema."""


class SparkleUpdateError(UpdaterError):
    pass


class ScheduleError(UpdaterError):
    pass


class IOSInstallError(UpdaterError):
    """Base class for iOS app installation failures."""


class NoAppBundleFound(IOSInstallError):
    def __init__(self):
        super().__init__("No .app bundle found in the IPA payload")


class ExtractionFailed(IOSInstallError):
    def __init__(self, reason: str):
        super().__init__(f"Failed to extract IPA: {reason}")


class InvalidInfoPlist(IOSInstallError):
    def __init__(self, path):
        super().__init__(f"Info.plist missing or unreadable: {path}")


class NoExistingInstallation(IOSInstallError):
    def __init__(self, path):
        super().__init__(f"No existing installation found at {path}")


class MissingProtectedMetadata(IOSInstallError):
    def __init__(self):
        super().__init__(
            "Existing installation has no protectedMetadata; it cannot be updated safely"
        )


class ApiLookupFailed(IOSInstallError):
    def __init__(self, item_id: int, reason: str):
        super().__init__(f"App Store lookup failed for {item_id}: {reason}")


class MetadataEncodingError(IOSInstallError):
    def __init__(self, reason: str):
        super().__init__(f"Failed to encode metadata: {reason}")


class AtomicReplacementFailed(IOSInstallError):
    """The privileged swap failed; carries the outcome of the rollback attempt."""

    def __init__(self, reason: str, rollback_attempted: bool, rollback_succeeded: bool):
        self.reason = reason
        self.rollback_attempted = rollback_attempted
        self.rollback_succeeded = rollback_succeeded
        message = f"Atomic replacement failed: {reason}"
        if rollback_attempted and not rollback_succeeded:
            message += " (rollback failed; the installation may be inconsistent)"
        elif rollback_attempted:
            message += " (original installation restored)"
        super().__init__(message)
