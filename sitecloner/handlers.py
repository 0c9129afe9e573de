import asyncio
import logging
import os
from typing import Callable, Dict, Optional, Set

from .errors import PersistenceFailure
from .localizer import CaptureMap, normalize_url, same_origin
from .rewriter import rewrite
from .utils import is_css, is_html

logger = logging.getLogger(__name__)


class ResourceCapture:
    """Persist every qualifying network response of one job, once per URL.

    Responses arrive through a synchronous callback; each one is handled in
    its own task so that body retrieval does not block the browser. Call
    :meth:`drain` before reading the capture map.
    """

    def __init__(
        self,
        session,
        capture_map: CaptureMap,
        output_dir: str,
        download_external: bool = False,
        on_saved: Optional[Callable[[str, int], None]] = None,
    ):
        self.session = session
        self.capture_map = capture_map
        self.output_dir = output_dir
        self.download_external = download_external
        self.on_saved = on_saved
        self.assets = 0
        self.stylesheets: Dict[str, bytes] = {}
        self._inflight: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._failure: Optional[PersistenceFailure] = None

    def handle_response(self, response) -> None:
        task = asyncio.ensure_future(self._capture(response))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def wants(self, url: str, content_type: str) -> bool:
        if not url.startswith(("http://", "https://")):
            return False
        if not self.download_external and not same_origin(url, self.capture_map.base_url):
            return False
        if is_html(content_type):
            # the rendered DOM is saved per route instead
            return False
        key = normalize_url(url)
        return key not in self._inflight and key not in self.capture_map

    async def _capture(self, response) -> None:
        url = response.url
        content_type = (response.headers.get("content-type") or "").lower()
        if not self.wants(url, content_type):
            return
        if 300 <= response.status < 400:
            return

        key = normalize_url(url)
        self._inflight.add(key)
        try:
            body = await self._read_body(response)
            if not body:
                return
            self._store(key, content_type, body)
        finally:
            self._inflight.discard(key)

    async def _read_body(self, response) -> Optional[bytes]:
        try:
            return await response.body()
        except Exception as e:
            logger.debug(f"Normal fetch failed for {response.url} ({e}), falling back")
        body = await self.session.fetch_body(response.url)
        if not body:
            logger.info(f"❌ Cannot fetch: {response.url}")
        return body

    def _store(self, url: str, content_type: str, body: bytes) -> None:
        local_rel_path = self.capture_map.claim(url, content_type, body)
        if is_css(content_type):
            self.stylesheets[url] = body
            body = rewrite(body, "css", url, dict(self.capture_map.items()), local_rel_path)
        try:
            write_file(self.output_dir, local_rel_path, body)
        except PersistenceFailure as e:
            if self._failure is None:
                self._failure = e
            return

        self.assets += 1
        logger.debug(f"📥 Saved: {local_rel_path}")
        if self.on_saved:
            self.on_saved(local_rel_path, self.assets)

    async def drain(self) -> None:
        """Wait for every pending capture, then surface the first write failure."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
        if self._failure is not None:
            raise self._failure


def write_file(output_dir: str, rel_path: str, data: bytes) -> str:
    """Write bytes at output_dir/rel_path, creating parent directories."""
    local_path = os.path.join(output_dir, *rel_path.split("/"))
    try:
        os.makedirs(os.path.dirname(local_path), exist_ok=True)
        with open(local_path, "wb") as f:
            f.write(data)
    except OSError as e:
        raise PersistenceFailure(f"Could not write {rel_path}: {e.strerror or e}")
    return local_path
