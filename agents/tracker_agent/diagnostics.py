import json
import time
from pathlib import Path
from typing import Any


class Diagnostics:
    """Optional observability hook. The default implementation does nothing."""

    def snapshot(self, page, tag: str) -> None:
        return None

    def dump(self, tag: str, payload: Any) -> None:
        return None


class ArtifactDiagnostics(Diagnostics):
    """Writes screenshots, HTML and JSON dumps under <data_dir>/runs/<job>/<run_id>/."""

    def __init__(self, data_dir: Path, job: str, run_id: str, logger) -> None:
        self.run_dir = data_dir / "runs" / job / run_id
        self.logger = logger

    @staticmethod
    def _safe_tag(tag: str) -> str:
        safe = "".join(ch if (ch.isalnum() or ch in {"-", "_"}) else "_" for ch in str(tag or "snap"))
        return safe.strip("_") or "snap"

    def snapshot(self, page, tag: str) -> None:
        try:
            self.run_dir.mkdir(parents=True, exist_ok=True)
            name = f"{self._safe_tag(tag)}_{time.strftime('%H%M%S')}"
            page.screenshot(path=str(self.run_dir / f"{name}.png"), full_page=True)
            (self.run_dir / f"{name}.html").write_text(page.content(), encoding="utf-8")
            self.logger.info("Snapshot saved: %s", self.run_dir / name)
        except Exception:
            self.logger.exception("Could not save snapshot %s", tag)

    def dump(self, tag: str, payload: Any) -> None:
        try:
            self.run_dir.mkdir(parents=True, exist_ok=True)
            path = self.run_dir / f"{self._safe_tag(tag)}.json"
            path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, default=str), encoding="utf-8")
        except Exception:
            self.logger.exception("Could not write diagnostic dump %s", tag)
