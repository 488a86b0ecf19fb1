"""Model download progress normalization and throttling."""

from typing import Any, Optional

from shared.models import DownloadStatus, ModelDownloadProgress


def normalize_pull_chunk(chunk: dict[str, Any]) -> tuple[DownloadStatus, int]:
    """
    Map one line of the pull stream to ``(status, progress)``.

    ``success`` means completed at 100; any status mentioning
    ``verifying`` is verifying; otherwise progress is
    ``floor(completed / total * 100)`` when both are known.
    """
    raw_status = str(chunk.get("status", ""))

    if raw_status == "success":
        return DownloadStatus.COMPLETED, 100
    if "verifying" in raw_status:
        return DownloadStatus.VERIFYING, 0

    total = chunk.get("total")
    completed = chunk.get("completed")
    if total and completed:
        return DownloadStatus.DOWNLOADING, min(100, int(completed * 100 // total))

    return DownloadStatus.DOWNLOADING, 0


class DownloadProgressThrottle:
    """
    Decides which pull-stream updates are worth broadcasting.

    An update goes out when the status changes, progress rises by at least
    one point, or the download completes.
    """

    def __init__(self, model: str) -> None:
        self.model = model
        self.last_status = DownloadStatus.DOWNLOADING
        self.last_progress = 0
        self.completed = False

    def update(self, chunk: dict[str, Any]) -> Optional[ModelDownloadProgress]:
        """
        Feed one stream line.

        Returns:
            The progress to broadcast, or None to stay quiet
        """
        status, progress = normalize_pull_chunk(chunk)

        should_broadcast = (
            status != self.last_status
            or progress > self.last_progress
            or status == DownloadStatus.COMPLETED
        )
        if not should_broadcast:
            return None

        self.last_status = status
        self.last_progress = progress
        if status == DownloadStatus.COMPLETED:
            self.completed = True

        return ModelDownloadProgress(
            model=self.model,
            status=status,
            progress=progress,
            message=str(chunk.get("status", "")),
        )
