"""Error taxonomy for pvecloud provisioning runs."""

from typing import List, Optional


class PvecloudError(RuntimeError):
    """Base class for every error raised by pvecloud."""


class ValidationError(PvecloudError):
    """Descriptor is malformed or inconsistent. Raised before any external call."""


class TemplateError(ValidationError):
    """A payload placeholder has no value to resolve to."""

    def __init__(self, placeholders: List[str], where: str) -> None:
        self.placeholders = sorted(set(placeholders))
        self.where = where
        names = ", ".join(self.placeholders)
        super().__init__(f"Unresolved placeholder(s) {names} in {where}")


class ResolutionError(PvecloudError):
    """A prerequisite of the run could not be resolved."""


class StorageAmbiguityError(ResolutionError):
    """More than one storage pool qualifies and none was chosen explicitly."""

    def __init__(self, candidates: List[str]) -> None:
        self.candidates = list(candidates)
        super().__init__(
            "Multiple storage pools support disk images "
            f"({', '.join(self.candidates)}); choose one explicitly"
        )


class ControlPlaneError(PvecloudError):
    """A call against the Proxmox control plane failed or timed out."""

    def __init__(self, operation: str, cause: str) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation}: {cause}")


class ProvisioningError(PvecloudError):
    """A required pipeline step failed; later steps were not executed."""

    def __init__(self, step: str, cause: str, result: Optional[object] = None) -> None:
        self.step = step
        self.cause = cause
        self.result = result
        super().__init__(f"Step '{step}' failed: {cause}")


class AdvisoryFailure(PvecloudError):
    """A best-effort step failed. Recorded and logged, never raised out of a run."""

    def __init__(self, step: str, cause: str) -> None:
        self.step = step
        self.cause = cause
        super().__init__(f"Step '{step}' (best-effort) failed: {cause}")
