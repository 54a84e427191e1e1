class MaintenanceError(Exception):
    """Base error for the scheduling core."""


class TemplateNotFound(MaintenanceError):
    """No template matches an asset's equipment type / manufacturer.

    Expected and per-asset: the scheduler logs it and moves on.
    """

    def __init__(self, equipment_type: str, manufacturer: str | None = None, kind=None):
        self.equipment_type = equipment_type
        self.manufacturer = manufacturer
        self.kind = kind
        label = equipment_type if not manufacturer else f"{equipment_type} / {manufacturer}"
        super().__init__(f"No template for {label}")


class DuplicateTaskSkipped(MaintenanceError):
    """An active task already covers the period. A no-op signal, not a failure."""

    def __init__(self, asset_id: int, existing_task_id: int):
        self.asset_id = asset_id
        self.existing_task_id = existing_task_id
        super().__init__(f"Asset {asset_id} already has active task {existing_task_id} in period")


class RepositoryWriteFailure(MaintenanceError):
    """A write for a single unit of work failed; retried on the next sweep."""


class DispatchFailure(MaintenanceError):
    """A notification channel could not deliver."""

