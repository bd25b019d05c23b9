import logging
import mimetypes
import os
from typing import Optional, Protocol
from urllib.parse import unquote

from .models import Headers, HTTPRequest, HTTPResponse

logger = logging.getLogger(__name__)


class AssetServer(Protocol):
    """Anything that can answer a request no route matched."""

    def serve(self, request: HTTPRequest) -> HTTPResponse:
        ...


class StaticAssets:
    """
    Serves files from a directory for requests that no route claimed.

    Stands in for the front-end dev server: directories resolve to their
    index file, and with ``spa_fallback`` HTML navigations to unknown paths
    get the root index so client-side routing works.
    """

    def __init__(self, root: Optional[str] = None, index: str = "index.html",
                 spa_fallback: bool = True):
        self._root = os.path.realpath(root) if root else None
        self._index = index
        self._spa_fallback = spa_fallback

    @property
    def root(self) -> Optional[str]:
        return self._root

    def serve(self, request: HTTPRequest) -> HTTPResponse:
        if request.method not in ("GET", "HEAD"):
            response = HTTPResponse.create_error(405, "Method Not Allowed")
            response.headers.add("Allow", "GET, HEAD")
            return response
        if self._root is None:
            return HTTPResponse.create_error(404, "Not Found")

        file_path = self._resolve(request.path)
        if file_path is None and self._spa_fallback and self._wants_html(request):
            file_path = self._existing(os.path.join(self._root, self._index))
        if file_path is None:
            return HTTPResponse.create_error(404, "Not Found")

        try:
            with open(file_path, "rb") as f:
                body = f.read()
        except OSError as e:
            logger.error(f"Error reading asset {file_path}: {e}")
            return HTTPResponse.create_error(500, "Internal Server Error")

        content_type = mimetypes.guess_type(file_path)[0] or "application/octet-stream"
        if content_type.startswith("text/") or content_type in ("application/javascript", "application/json"):
            content_type += "; charset=utf-8"
        return HTTPResponse(
            status_code=200,
            status_message="OK",
            headers=Headers([
                ("Content-Type", content_type),
                ("Content-Length", str(len(body))),
                ("Cache-Control", "no-cache"),
            ]),
            body=body,
        )

    def _resolve(self, path: str) -> Optional[str]:
        """Map a URL path to a file under root, refusing anything outside it."""
        relative = unquote(path).lstrip("/")
        if "\x00" in relative:
            return None
        candidate = os.path.realpath(os.path.join(self._root, relative))
        if os.path.commonpath([candidate, self._root]) != self._root:
            return None
        if os.path.isdir(candidate):
            candidate = os.path.join(candidate, self._index)
        return self._existing(candidate)

    @staticmethod
    def _existing(path: str) -> Optional[str]:
        return path if os.path.isfile(path) else None

    @staticmethod
    def _wants_html(request: HTTPRequest) -> bool:
        accept = request.headers.get("Accept") or ""
        return "text/html" in accept and not os.path.splitext(request.path)[1]
