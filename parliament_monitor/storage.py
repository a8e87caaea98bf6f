from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import structlog


logger = structlog.get_logger(__name__)


class StateLoadError(RuntimeError):
    pass


def default_issues_path(state_path: Path) -> Path:
    return state_path.with_name(f"{state_path.stem}.issues.json")


def _write_json_atomic(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp")
    tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), encoding="utf-8")
    tmp.replace(path)


def _read_json(path: Path) -> Any:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise StateLoadError(f"Unable to read {path}: {e}") from e


class JsonStateStore:
    """
    Whole-document JSON persistence for the cluster document (groups plus
    settings) and the issue list. Writes go through a temp file and rename.
    """

    def __init__(self, state_path: str | Path, issues_path: str | Path | None = None):
        self.state_path = Path(state_path)
        self.issues_path = Path(issues_path) if issues_path else default_issues_path(self.state_path)

    def load_clusters(self) -> dict[str, Any]:
        doc = _read_json(self.state_path)
        if doc is None:
            logger.info("No cluster state found, starting empty", path=str(self.state_path))
            return {"groups": [], "settings": {}}
        if not isinstance(doc, dict):
            raise StateLoadError(f"{self.state_path} does not contain a JSON object")
        doc.setdefault("groups", [])
        doc.setdefault("settings", {})
        return doc

    def save_clusters(self, doc: dict[str, Any]) -> None:
        _write_json_atomic(self.state_path, doc)

    def load_issues(self) -> list[dict[str, Any]]:
        docs = _read_json(self.issues_path)
        if docs is None:
            return []
        if isinstance(docs, dict):
            docs = docs.get("issues")
        if not isinstance(docs, list):
            raise StateLoadError(f"{self.issues_path} does not contain an issue list")
        return [d for d in docs if isinstance(d, dict)]

    def save_issues(self, docs: list[dict[str, Any]]) -> None:
        _write_json_atomic(self.issues_path, {"issues": docs})
