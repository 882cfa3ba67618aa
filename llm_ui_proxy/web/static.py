"""
Static asset bundle.

Serves the game UI (index.html, script.js, style.css) shipped inside the
package. The bundle is enumerated once at startup and never re-read from
the directory listing afterwards.
"""

from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType

from aiohttp import web

from llm_ui_proxy.utils.logging import get_logger

logger = get_logger(__name__)

BUNDLE_DIR = Path(__file__).resolve().parent.parent / "static"
INDEX_FILE = "index.html"


def load_bundle(directory: str | Path | None = None) -> Mapping[str, Path]:
    """Enumerate the asset bundle.

    Args:
        directory: Asset directory. Uses the packaged bundle if None.

    Returns:
        Read-only mapping of URL name (e.g., "css/site.css") to file path.
    """
    root = Path(directory).resolve() if directory is not None else BUNDLE_DIR
    if not root.is_dir():
        raise FileNotFoundError(f"Static asset directory not found: {root}")

    files = {
        path.relative_to(root).as_posix(): path
        for path in sorted(root.rglob("*"))
        if path.is_file() and not path.name.startswith(".")
    }
    logger.debug("Static bundle loaded", root=str(root), files=sorted(files))
    return MappingProxyType(files)


class StaticBundle:
    """GET/HEAD handler for every path outside the proxy prefix."""

    def __init__(self, files: Mapping[str, Path]) -> None:
        self._files = files

    def resolve(self, path: str) -> Path | None:
        name = path.lstrip("/") or INDEX_FILE
        return self._files.get(name)

    async def handle(self, request: web.Request) -> web.FileResponse:
        file_path = self.resolve(request.match_info.get("path", ""))
        if file_path is None:
            raise web.HTTPNotFound(text="404 page not found")
        # Content-Type is guessed from the file name by FileResponse
        return web.FileResponse(file_path)
