"""Capture driver: navigate each route, collect resources, write an offline copy."""
import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

from .archive import build_async
from .browser import WAIT_UNTIL_CHOICES, launch_session
from .config import Settings
from .errors import InvalidInput
from .handlers import ResourceCapture, write_file
from .localizer import CaptureMap, is_root_route, route_output_path, route_url, same_origin
from .rewriter import rewrite
from .utils import mkdir

logger = logging.getLogger(__name__)

SITE_DIR = "site"


@dataclass(frozen=True)
class CaptureOptions:
    routes: Tuple[str, ...] = ("/",)
    wait_until: str = "load"
    extra_wait_ms: int = 1500
    max_wait_ms: int = 45000
    download_external: bool = False
    auto_scroll: bool = False
    block_trackers: bool = False


@dataclass(frozen=True)
class Progress:
    stage: str
    message: str
    assets: int = 0

    def as_dict(self):
        return {"stage": self.stage, "message": self.message, "assets": self.assets}


@dataclass(frozen=True)
class RouteResult:
    route: str
    url: str
    html_path: str


@dataclass
class CaptureResult:
    site_dir: str
    archive_path: Optional[str] = None
    routes: List[RouteResult] = field(default_factory=list)
    assets: int = 0


ProgressCallback = Callable[[Progress], None]


def build_options(
    url: str,
    settings: Settings,
    routes: Optional[Sequence[str]] = None,
    wait_until: Optional[str] = None,
    extra_wait_ms: Optional[float] = None,
    max_wait_ms: Optional[float] = None,
    download_external: bool = False,
    auto_scroll: bool = False,
    block_trackers: bool = False,
) -> CaptureOptions:
    """Validate raw request options and apply server defaults and ceilings."""
    try:
        urlsplit(url)
    except ValueError:
        raise InvalidInput("Invalid URL")

    routes = [r.strip() for r in (routes or []) if isinstance(r, str)] or ["/"]
    for route in routes:
        try:
            target = route_url(route, url)
        except ValueError:
            raise InvalidInput(f"Invalid route {route!r}")
        if not same_origin(target, url):
            raise InvalidInput(f"Route {route!r} leaves the target origin")

    wait_until = wait_until or "load"
    if wait_until not in WAIT_UNTIL_CHOICES:
        raise InvalidInput(f"waitUntil must be one of {', '.join(WAIT_UNTIL_CHOICES)}")

    if extra_wait_ms is None:
        extra_wait_ms = settings.default_extra_wait_ms
    if max_wait_ms is None:
        max_wait_ms = settings.default_max_wait_ms
    if extra_wait_ms < 0:
        raise InvalidInput("extraWaitMs must not be negative")
    if max_wait_ms <= 0:
        raise InvalidInput("maxWaitMs must be positive")

    return CaptureOptions(
        routes=tuple(routes),
        wait_until=wait_until,
        extra_wait_ms=int(min(extra_wait_ms, settings.max_wait_ms_ceiling)),
        max_wait_ms=int(min(max_wait_ms, settings.max_wait_ms_ceiling)),
        download_external=bool(download_external),
        auto_scroll=bool(auto_scroll),
        block_trackers=bool(block_trackers),
    )


def route_aliases(route: str, base_url: str) -> List[str]:
    """Every URL a link to this route may take once resolved."""
    target = route_url(route, base_url)
    parts = urlsplit(target)
    origin = f"{parts.scheme}://{parts.netloc}"
    if is_root_route(route):
        return [origin + "/", origin + "/index.html"]
    path = parts.path.rstrip("/")
    return [origin + path, origin + path + "/", origin + path + "/index.html"]


class CaptureDriver:
    """Drives one browser session through the routes of one job."""

    def __init__(
        self,
        url: str,
        work_dir: str,
        options: CaptureOptions,
        on_progress: Optional[ProgressCallback] = None,
        session_factory=None,
        single_process: bool = False,
    ):
        self.url = url
        self.options = options
        self.site_dir = os.path.join(work_dir, SITE_DIR)
        self.on_progress = on_progress
        self.session_factory = session_factory or launch_session
        self.single_process = single_process
        self.stage = "starting"
        self.capture_map = CaptureMap(url)
        self.capture: Optional[ResourceCapture] = None
        self.documents: Dict[str, Tuple[str, bytes]] = {}
        self.result = CaptureResult(site_dir=self.site_dir)

    @property
    def assets(self) -> int:
        return self.capture.assets if self.capture else 0

    def report(self, stage: str, message: str) -> None:
        self.stage = stage
        logger.info(f"[{stage}] {message}")
        if self.on_progress:
            self.on_progress(Progress(stage, message, self.assets))

    def _saved(self, local_rel_path: str, count: int) -> None:
        if self.on_progress:
            self.on_progress(Progress(self.stage, f"Saved {local_rel_path}", count))

    def links(self) -> Dict[str, str]:
        return dict(self.capture_map.items())

    async def run(self) -> CaptureResult:
        mkdir(self.site_dir)
        for route in self.options.routes:
            for alias in route_aliases(route, self.url):
                self.capture_map.register(alias, route_output_path(route))

        self.report("starting", "Launching browser")
        async with self.session_factory(
            single_process=self.single_process, block_trackers=self.options.block_trackers
        ) as session:
            self.capture = ResourceCapture(
                session,
                self.capture_map,
                self.site_dir,
                download_external=self.options.download_external,
                on_saved=self._saved,
            )
            session.on_response(self.capture.handle_response)
            for route in self.options.routes:
                await self.capture_route(session, route)
            await self.capture.drain()

        # responses that arrived while the browser was closing
        await self.capture.drain()
        self.relink()
        self.result.assets = self.assets
        return self.result

    async def capture_route(self, session, route: str) -> RouteResult:
        target = route_url(route, self.url)
        self.report("navigating", f"🌐 Opening {target}")
        final_url = await session.navigate(target, self.options.wait_until, self.options.max_wait_ms)

        self.report("settling", f"Waiting {self.options.extra_wait_ms} ms for late rendering")
        if self.options.auto_scroll:
            await session.auto_scroll()
        if self.options.extra_wait_ms:
            await asyncio.sleep(self.options.extra_wait_ms / 1000)

        self.report("serializing", f"Saving rendered HTML for {route or '/'}")
        await self.capture.drain()
        document = await session.current_document()
        html_path = route_output_path(route)
        self.documents[html_path] = (final_url, document)
        write_file(self.site_dir, html_path, rewrite(document, "html", final_url, self.links(), html_path))

        result = RouteResult(route=route, url=final_url, html_path=html_path)
        self.result.routes.append(result)
        logger.info(f"📄 HTML saved: {html_path}")
        return result

    def relink(self) -> None:
        """Rewrite stylesheets and pages again against the complete capture map.

        Resources that finished loading after a document was first written
        are only linked by this pass.
        """
        self.report("relinking", "Linking captured resources")
        links = self.links()
        for css_url, body in sorted(self.capture.stylesheets.items()):
            css_path = self.capture_map.lookup(css_url)
            write_file(self.site_dir, css_path, rewrite(body, "css", css_url, links, css_path))
        for html_path, (base_url, document) in sorted(self.documents.items()):
            write_file(self.site_dir, html_path, rewrite(document, "html", base_url, links, html_path))


async def clone_page(
    url: str,
    work_dir: str,
    archive_path: str,
    options: CaptureOptions,
    on_progress: Optional[ProgressCallback] = None,
    session_factory=None,
    single_process: bool = False,
) -> CaptureResult:
    """Capture every route of url into work_dir/site and zip it to archive_path."""
    driver = CaptureDriver(
        url,
        work_dir,
        options,
        on_progress=on_progress,
        session_factory=session_factory,
        single_process=single_process,
    )
    result = await driver.run()

    driver.report("packaging", "Building ZIP archive")
    result.archive_path = await build_async(result.site_dir, archive_path)
    logger.info(f"✅ Capture completed: {len(result.routes)} pages, {result.assets} assets")
    return result
