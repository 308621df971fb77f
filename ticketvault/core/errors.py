from __future__ import annotations


class TicketVaultError(Exception):
    """Base error for ticketvault."""


class TenantNotFoundError(TicketVaultError):
    """Referenced tenant does not exist."""


class TenantAccessError(TicketVaultError):
    """Actor is not a member of the tenant it is operating on."""


class SnapshotExportError(TicketVaultError):
    """Reading a tenant snapshot failed; exports are all-or-nothing."""


class ArchiveWriteError(TicketVaultError):
    """Packaging an export artifact failed."""


class ImportValidationError(TicketVaultError):
    """Inbound snapshot document is structurally invalid."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("Invalid import data: " + ", ".join(errors))
        self.errors = list(errors)


class DatabaseError(TicketVaultError):
    """Database layer failure."""
