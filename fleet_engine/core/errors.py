# fleet_engine/core/errors.py

# -----------------------------
# Base Errors
# -----------------------------

class FleetError(Exception):
    """Base class for all fleet engine errors."""

    @property
    def category(self) -> str:
        """Taxonomy name used in per-node reports."""
        for cls in type(self).__mro__:
            if cls in _CATEGORIES:
                return cls.__name__
        return type(self).__name__


class FleetValidationError(FleetError):
    """Invalid input or malformed inventory."""
    pass


# -----------------------------
# Prerequisite Errors (fatal)
# -----------------------------

class MissingPrerequisite(FleetError):
    """Something the whole operation depends on is absent."""
    pass


class InventoryNotFound(MissingPrerequisite):
    """No inventory exists yet - provisioning has not been run."""
    pass


class BaseImageUnavailable(MissingPrerequisite):
    """Base disk image could not be downloaded or verified."""
    pass


# -----------------------------
# Per-node Errors (recoverable)
# -----------------------------

class TransportFailure(FleetError):
    """Node unreachable or SSH/transfer fault."""
    pass


class TransferError(TransportFailure):
    """File or tree copy to a node failed."""
    pass


class AddressTimeout(FleetError):
    """Node did not acquire a network lease in time."""
    pass


class RemoteCommandFailure(FleetError):
    """Command exited non-zero (on a node or on the hypervisor host)."""

    def __init__(self, message: str, returncode: int | None = None, output: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class HypervisorError(RemoteCommandFailure):
    """Hypervisor toolstack command failed."""
    pass


# -----------------------------
# External Services
# -----------------------------

class ExternalServiceUnavailable(FleetError):
    """Broker management API unreachable or returned garbage."""
    pass


_CATEGORIES = {
    FleetValidationError,
    MissingPrerequisite,
    TransportFailure,
    AddressTimeout,
    RemoteCommandFailure,
    ExternalServiceUnavailable,
}
