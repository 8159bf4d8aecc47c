"""ATA CRM — Progress projection for order progress bars."""
from crm.lifecycle.stages import STAGE_COUNT, OrderStage, index_of


def progress_ratio(stage: OrderStage | str) -> float:
    return (index_of(stage) + 1) / STAGE_COUNT


def progress_percent(stage: OrderStage | str) -> int:
    """Completion percentage 0..100 for display. UnknownStageError propagates."""
    percent = round(progress_ratio(stage) * 100)
    return max(0, min(100, percent))
