import os
import zipfile

import pytest

from sitecloner.cloner import CaptureOptions, build_options, clone_page, route_aliases
from sitecloner.errors import CaptureFailure, InvalidInput, PersistenceFailure
from sitecloner.handlers import ResourceCapture
from sitecloner.localizer import CaptureMap

from .fakes import PNG_BYTES, FakeBrowser, FakePage, FakeResponse, FakeSession

URL = "http://example.com/"


def read(path):
    with open(path, "rb") as f:
        return f.read()


def site_files(site_dir):
    found = []
    for dirpath, _, filenames in os.walk(site_dir):
        for name in filenames:
            found.append(os.path.relpath(os.path.join(dirpath, name), site_dir).replace(os.sep, "/"))
    return sorted(found)


class TestClonePage:
    @pytest.mark.asyncio
    async def test_two_routes_produce_offline_tree_and_archive(self, tmp_path, fake_browser):
        # Given: a site with a root page and an about page
        options = CaptureOptions(routes=("/", "/about"), extra_wait_ms=0)
        archive_path = str(tmp_path / "site-clone-test.zip")

        # When: capturing both routes
        result = await clone_page(URL, str(tmp_path), archive_path, options, session_factory=fake_browser.launch)

        # Then: every page and same-origin asset is on disk exactly once
        assert site_files(result.site_dir) == [
            "about/index.html",
            "assets/img/bg.png",
            "assets/img/logo.png",
            "assets/img/team.jpg",
            "assets/static/app.css",
            "assets/static/app.js",
            "index.html",
        ]
        assert result.assets == 5
        assert [r.html_path for r in result.routes] == ["index.html", "about/index.html"]

        with zipfile.ZipFile(result.archive_path) as zf:
            assert sorted(zf.namelist()) == site_files(result.site_dir)
            assert zf.testzip() is None

    @pytest.mark.asyncio
    async def test_html_is_rewritten_to_local_copies(self, tmp_path, fake_browser):
        options = CaptureOptions(routes=("/", "/about"), extra_wait_ms=0)
        result = await clone_page(URL, str(tmp_path), str(tmp_path / "out.zip"), options, session_factory=fake_browser.launch)

        index = read(os.path.join(result.site_dir, "index.html")).decode()
        assert 'href="assets/static/app.css"' in index
        assert 'src="assets/img/logo.png"' in index
        assert 'href="about/index.html"' in index
        assert "<base" not in index
        # cross-origin capture is off, so the CDN reference is untouched
        assert 'src="https://cdn.other.com/lib.js"' in index

        about = read(os.path.join(result.site_dir, "about", "index.html")).decode()
        assert 'src="../assets/img/logo.png"' in about
        assert 'src="../assets/img/team.jpg"' in about
        assert 'href="../index.html"' in about

    @pytest.mark.asyncio
    async def test_css_references_are_relinked(self, tmp_path, fake_browser):
        # bg.png arrives after app.css, so only the final relink pass can point at it
        options = CaptureOptions(routes=("/",), extra_wait_ms=0)
        result = await clone_page(URL, str(tmp_path), str(tmp_path / "out.zip"), options, session_factory=fake_browser.launch)

        css = read(os.path.join(result.site_dir, "assets", "static", "app.css"))
        assert css == b"body{background:url(../img/bg.png)}"

    @pytest.mark.asyncio
    async def test_external_resources_when_enabled(self, tmp_path, fake_browser):
        options = CaptureOptions(routes=("/",), extra_wait_ms=0, download_external=True)
        result = await clone_page(URL, str(tmp_path), str(tmp_path / "out.zip"), options, session_factory=fake_browser.launch)

        assert "assets/_external/cdn.other.com/lib.js" in site_files(result.site_dir)
        index = read(os.path.join(result.site_dir, "index.html")).decode()
        assert 'src="assets/_external/cdn.other.com/lib.js"' in index

    @pytest.mark.asyncio
    async def test_progress_stages_in_order(self, tmp_path, fake_browser):
        seen = []
        options = CaptureOptions(routes=("/", "/about"), extra_wait_ms=0)
        await clone_page(
            URL, str(tmp_path), str(tmp_path / "out.zip"), options,
            on_progress=seen.append, session_factory=fake_browser.launch,
        )

        stages = []
        for progress in seen:
            if not stages or stages[-1] != progress.stage:
                stages.append(progress.stage)
        assert stages[0] == "starting"
        assert stages[-1] == "packaging"
        assert stages.count("navigating") == 2
        assert "relinking" in stages
        counts = [p.assets for p in seen]
        assert counts == sorted(counts)
        assert counts[-1] == 5

    @pytest.mark.asyncio
    async def test_navigation_options_passed_to_session(self, tmp_path, fake_browser):
        options = CaptureOptions(routes=("/",), wait_until="networkidle2", max_wait_ms=1234, extra_wait_ms=0,
                                 auto_scroll=True, block_trackers=True)
        await clone_page(URL, str(tmp_path), str(tmp_path / "out.zip"), options, session_factory=fake_browser.launch)

        session = fake_browser.sessions[0]
        assert session.navigations == [("http://example.com/", "networkidle2", 1234)]
        assert session.scrolled == 1
        assert fake_browser.launch_kwargs[0]["block_trackers"] is True

    @pytest.mark.asyncio
    async def test_failure_closes_browser_and_keeps_partial_output(self, tmp_path, fake_browser):
        options = CaptureOptions(routes=("/", "/missing"), extra_wait_ms=0)

        with pytest.raises(CaptureFailure):
            await clone_page(URL, str(tmp_path), str(tmp_path / "out.zip"), options, session_factory=fake_browser.launch)

        assert fake_browser.sessions[0].closed
        assert os.path.exists(tmp_path / "site" / "index.html")
        assert not os.path.exists(tmp_path / "out.zip")

    @pytest.mark.asyncio
    async def test_one_session_per_capture(self, tmp_path, fake_browser):
        options = CaptureOptions(routes=("/", "/about"), extra_wait_ms=0)
        await clone_page(URL, str(tmp_path), str(tmp_path / "out.zip"), options, session_factory=fake_browser.launch)
        assert len(fake_browser.sessions) == 1
        assert fake_browser.sessions[0].closed


class TestResourceCapture:
    def make(self, tmp_path, download_external=False, fallback_bodies=None):
        session = FakeSession({}, fallback_bodies)
        capture_map = CaptureMap(URL)
        return ResourceCapture(session, capture_map, str(tmp_path), download_external=download_external)

    @pytest.mark.asyncio
    async def test_duplicate_responses_written_once(self, tmp_path):
        capture = self.make(tmp_path)
        for _ in range(3):
            capture.handle_response(FakeResponse("http://example.com/a.png", PNG_BYTES, "image/png"))
        await capture.drain()
        assert capture.assets == 1
        assert len(capture.capture_map) == 1

    @pytest.mark.asyncio
    async def test_skipped_responses(self, tmp_path):
        capture = self.make(tmp_path)
        capture.handle_response(FakeResponse("http://example.com/page", b"<html></html>", "text/html"))
        capture.handle_response(FakeResponse("https://cdn.other.com/x.js", b"x", "text/javascript"))
        capture.handle_response(FakeResponse("http://example.com/old", b"", "", status=301))
        capture.handle_response(FakeResponse("http://example.com/empty.js", b"", "text/javascript"))
        capture.handle_response(FakeResponse("data:image/png;base64,AAAA", b"x", "image/png"))
        await capture.drain()
        assert capture.assets == 0
        assert os.listdir(tmp_path) == []

    @pytest.mark.asyncio
    async def test_body_fallback(self, tmp_path):
        url = "http://example.com/late.js"
        capture = self.make(tmp_path, fallback_bodies={url: b"late()"})
        capture.handle_response(FakeResponse(url, RuntimeError("body gone"), "text/javascript"))
        await capture.drain()
        assert read(tmp_path / "assets" / "late.js") == b"late()"

    @pytest.mark.asyncio
    async def test_failed_body_can_be_captured_later(self, tmp_path):
        url = "http://example.com/retry.css"
        capture = self.make(tmp_path)
        capture.handle_response(FakeResponse(url, RuntimeError("body gone"), "text/css"))
        await capture.drain()
        capture.handle_response(FakeResponse(url, b"a{}", "text/css"))
        await capture.drain()
        assert capture.assets == 1

    @pytest.mark.asyncio
    async def test_write_failure_surfaces_on_drain(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        capture = ResourceCapture(FakeSession({}), CaptureMap(URL), str(blocker))
        capture.handle_response(FakeResponse("http://example.com/a.js", b"a()", "text/javascript"))
        with pytest.raises(PersistenceFailure):
            await capture.drain()


class TestBuildOptions:
    def test_defaults_from_settings(self, settings):
        options = build_options(URL, settings)
        assert options.routes == ("/",)
        assert options.wait_until == "load"
        assert options.max_wait_ms == settings.default_max_wait_ms
        assert options.extra_wait_ms == settings.default_extra_wait_ms

    def test_max_wait_clamped_to_ceiling(self, settings):
        options = build_options(URL, settings, max_wait_ms=10 ** 9)
        assert options.max_wait_ms == settings.max_wait_ms_ceiling

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"wait_until": "forever"},
            {"extra_wait_ms": -1},
            {"max_wait_ms": 0},
            {"routes": ["https://evil.example.net/"]},
            {"routes": ["//evil.example.net/x"]},
            {"routes": ["http://[::1"]},
        ],
    )
    def test_invalid(self, settings, kwargs):
        with pytest.raises(InvalidInput):
            build_options(URL, settings, **kwargs)

    def test_malformed_url(self, settings):
        with pytest.raises(InvalidInput, match="Invalid URL"):
            build_options("http://[::1", settings)

    def test_route_aliases(self):
        assert route_aliases("/about", URL) == [
            "http://example.com/about",
            "http://example.com/about/",
            "http://example.com/about/index.html",
        ]
        assert route_aliases("/", URL) == ["http://example.com/", "http://example.com/index.html"]


class TestRedirectedRoute:
    @pytest.mark.asyncio
    async def test_final_url_used_as_document_base(self, tmp_path):
        html = '<html><head><link rel="stylesheet" href="style.css"></head></html>'
        pages = {
            "http://example.com/": FakePage(
                html,
                [FakeResponse("http://example.com/docs/style.css", b"a{}", "text/css")],
                final_url="http://example.com/docs/",
            )
        }
        browser = FakeBrowser(pages)
        options = CaptureOptions(routes=("/",), extra_wait_ms=0)
        result = await clone_page(URL, str(tmp_path), str(tmp_path / "out.zip"), options, session_factory=browser.launch)
        index = read(os.path.join(result.site_dir, "index.html")).decode()
        assert 'href="assets/docs/style.css"' in index
        assert result.routes[0].url == "http://example.com/docs/"
