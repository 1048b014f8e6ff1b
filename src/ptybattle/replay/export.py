from __future__ import annotations

import html
import json
import logging
from importlib import resources
from pathlib import Path

from ..errors import ValidationRejected
from .playback import format_time
from .recorder import ReplayDocument

logger = logging.getLogger(__name__)

FORMATS = ("json", "html")

_DATA_MARKER = "/*__REPLAY_DATA__*/null"
_TITLE_MARKER = "__REPLAY_TITLE__"
_META_MARKER = "<!--__REPLAY_META__-->"


def _script_safe_json(document: ReplayDocument) -> str:
    # Escaped so the payload can never close the surrounding <script> element.
    text = json.dumps(document.to_dict(), ensure_ascii=True)
    return text.replace("<", "\\u003c").replace(">", "\\u003e").replace("&", "\\u0026")


def _metadata_html(document: ReplayDocument) -> str:
    meta = document.metadata
    command = " ".join([meta.command, *meta.args]).strip()
    items = (
        document.timestamp,
        f"Duration: {document.duration / 1000:.2f}s ({format_time(document.duration)})",
        f"Events: {len(document.events)}",
        f"Terminal: {meta.cols}x{meta.rows}",
        f"Command: {command}",
    )
    return "\n".join(f"<span>{html.escape(item)}</span>" for item in items)


def render_html(document: ReplayDocument) -> str:
    """Self-contained player page with the document embedded."""

    template = resources.files(__package__).joinpath("templates/player.html").read_text(encoding="utf-8")
    return (
        template.replace(_TITLE_MARKER, html.escape(f"Battle Replay - {document.timestamp}"))
        .replace(_META_MARKER, _metadata_html(document))
        .replace(_DATA_MARKER, _script_safe_json(document))
    )


def export_replay(document: ReplayDocument, fmt: str = "html") -> str:
    if fmt == "json":
        return document.to_json()
    if fmt == "html":
        return render_html(document)
    raise ValidationRejected(f"Unsupported export format: {fmt}")


def default_export_path(source: Path, fmt: str) -> Path:
    suffix = ".html" if fmt == "html" else ".export.json"
    return source.with_name(f"{source.stem}{suffix}")


def write_export(document: ReplayDocument, path: Path | str, fmt: str = "html") -> Path:
    path = Path(path)
    content = export_replay(document, fmt)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    logger.info("Exported replay as %s to %s", fmt, path.name)
    return path
