import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def append_audit(path: str, payload: Mapping[str, Any]) -> None:
    """Append one chat outcome as a JSON line. An empty path disables the sink."""
    if not path:
        return
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    entry = {"timestamp": now_iso(), **payload}
    with target.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
