"""Custom exceptions for kernel-vm-runner."""

from __future__ import annotations

from typing import Optional


class RunnerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigError(RunnerError):
    """Invalid environment or configuration file value."""


class UnknownArgumentError(RunnerError):
    """Command-line argument the runner does not understand."""


class DownloadError(RunnerError):
    """Base image could not be fetched."""


class ImageCreateError(RunnerError):
    """qemu-img failed to create the overlay disk."""


class IsoBuildError(RunnerError):
    """genisoimage failed to package the cloud-init seed."""


class LaunchError(RunnerError):
    """The hypervisor process exited right after being started."""


class ReadinessTimeoutError(RunnerError):
    """The forwarded SSH port never accepted a connection."""


class InstallStepError(RunnerError):
    """A remote kernel installation step failed.

    ``step`` names the failing step and ``exit_status`` carries the remote
    command's exit code (``None`` when the step failed locally, e.g. while
    parsing remote output).
    """

    step = "install"

    def __init__(self, message: str, exit_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.exit_status = exit_status


class MountError(InstallStepError):
    step = "mount"


class VersionDetectionError(InstallStepError):
    step = "detect-version"


class ArtifactMissingError(InstallStepError):
    step = "validate-artifact"


class UuidResolutionError(InstallStepError):
    step = "resolve-uuid"


class RemountError(InstallStepError):
    step = "remount-boot"


class CopyError(InstallStepError):
    step = "copy-files"


class InitramfsError(InstallStepError):
    step = "regenerate-initramfs"


class BootLoaderRegistrationError(InstallStepError):
    step = "register-boot-entry"


class DefaultEntryError(InstallStepError):
    step = "verify-default"


class RebootError(InstallStepError):
    step = "reboot"


class ConnectionDropped(RunnerError):
    """The SSH transport went away while a command was running."""
