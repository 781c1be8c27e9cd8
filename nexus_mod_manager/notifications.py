"""Turn operation results into user facing notifications."""

from typing import TYPE_CHECKING

from .events import Notification

if TYPE_CHECKING:
    from .categories import CategorySyncResult
    from .service import ActivateResult, DownloadStartResult, RemoveResult, UpdateCheckResult


def notification_for_download(result: "DownloadStartResult") -> Notification:
    if result.success:
        name = result.file_info.name if result.file_info else str(result.link.file_id)
        return Notification(
            type="global",
            id=str(result.link.file_id),
            title="Downloading from Nexus",
            message=name,
            display_ms=4000,
        )
    return Notification(
        type="global",
        id=str(result.link.file_id),
        title="Download failed",
        message=result.error or "Unknown error",
        display_ms=2000,
    )


def notification_for_update_check(result: "UpdateCheckResult") -> Notification:
    if result.success:
        message = "Check for mod updates complete"
        if result.summary and result.summary.updates:
            message += f" ({len(result.summary.updates)} update(s) available)"
        return Notification(type="success", message=message, display_ms=5000)
    return Notification(
        type="error",
        title="Check for mod updates failed",
        message=result.error or "Unknown error",
    )


def notification_for_removal(result: "RemoveResult") -> Notification | None:
    """None when the user cancelled."""
    if result.cancelled:
        return None
    if result.error:
        return Notification(type="error", title="Failed to remove mods", message=result.error)
    if result.failed:
        lines = [f"{mod_id}: {error}" for mod_id, error in result.failed.items()]
        return Notification(
            type="warning",
            title=f"{len(result.failed)} mod(s) could not be removed",
            message="\n".join(lines),
        )
    return Notification(
        type="success",
        message=f"Removed {len(result.removed)} mod(s)" if result.removed else "Nothing removed",
        display_ms=3000,
    )


def notification_for_activation(result: "ActivateResult") -> Notification:
    if result.success:
        return Notification(type="success", message="Deployment complete", display_ms=3000)
    return Notification(
        type="error", title="Deployment failed", message="\n".join(result.errors) or result.error
    )


def notification_for_category_sync(result: "CategorySyncResult") -> Notification | None:
    if result.cancelled:
        return None
    if result.error:
        return Notification(
            type="error", title="Failed to retrieve categories", message=result.error
        )
    return Notification(
        type="success",
        message=f"Retrieved {result.count} categories for {result.game_id}",
        display_ms=3000,
    )
