from __future__ import annotations


class ProvisionerError(RuntimeError):
    """Base class for every error raised while reconciling an InstallationRequest."""


class ConfigError(ProvisionerError):
    """Raised when the provisioner configuration is invalid."""


class BundleNotUnpacked(ProvisionerError):
    """The referenced Bundle exists but its content is not available yet.

    This is the only content error that is not retried with backoff: the
    Bundle watch re-triggers reconciliation once the phase changes.
    """

    def __init__(self, phase: str | None) -> None:
        self.phase = phase or ""
        message = "bundle is not yet unpacked"
        if self.phase:
            message = f"{message}, current phase={self.phase}"
        super().__init__(message)


class BundleLoadError(ProvisionerError):
    """Stored bundle content could not be fetched or decoded."""


class InvalidBundleContent(ProvisionerError):
    """A loaded manifest object could not be serialized into a template."""


class StorageError(ProvisionerError):
    """Base class for failures of the bundle content storage."""


class ContentNotFound(StorageError):
    """No stored content exists for the Bundle."""


class ContentReadError(StorageError):
    """Stored content exists but could not be read or decoded."""


class ReleaseBackendError(ProvisionerError):
    """Any failure reported by the release backend."""


class ReleaseNotFound(ReleaseBackendError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"release: not found: {name}")


class ReleaseExists(ReleaseBackendError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"cannot re-use a name that is still in use: {name}")


class ReleaseStateError(ProvisionerError):
    """The current release state could not be determined."""


class ReleaseApplyError(ProvisionerError):
    """An install, upgrade or reconcile call failed.

    ``reason`` is the condition reason reported on the InstallationRequest.
    """

    def __init__(self, reason: str, message: str) -> None:
        self.reason = reason
        super().__init__(message)


class WatchRegistrationError(ProvisionerError):
    """A subscription for a newly observed resource kind could not be established."""
