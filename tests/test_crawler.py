"""End-to-end tests for Harvester with the network and browser faked."""

import json
import logging
from unittest.mock import Mock

import pytest

from conftest import JPEG_BYTES, FakeBrowser, FakeResponse, FakeSession
from mlx_harvest.crawler import Harvester
from mlx_harvest.models import JobStatus, PageSnapshot
from mlx_harvest.progress import ProgressReporter

SEED = "https://example.com"
ROOT = "https://example.com/"

SEED_MARKUP = """
<html><head><link rel="stylesheet" href="/s.css"></head>
<body><img src="/a.jpg"><a href="/about">About</a></body></html>
"""


def snapshot(markup, final_url, title="Example"):
    return PageSnapshot(final_url=final_url, markup=markup, title=title)


def site_routes(**extra):
    routes = {
        "https://example.com/a.jpg": FakeResponse(200, JPEG_BYTES),
        "https://example.com/s.css": FakeResponse(200, "body { color: red }"),
        "https://example.com/team.jpg": FakeResponse(200, JPEG_BYTES + b"team"),
    }
    routes.update(extra)
    return routes


def site_pages(**extra):
    pages = {
        ROOT: snapshot(SEED_MARKUP, ROOT),
        "https://example.com/about": snapshot(
            '<img src="team.jpg">', "https://example.com/about", title="About"
        ),
    }
    pages.update(extra)
    return pages


def make_harvester(config, session, browser, **kwargs):
    reporter = kwargs.pop("reporter", None) or ProgressReporter()
    events = []
    reporter.subscribe(events.append)
    harvester = Harvester(
        config,
        reporter=reporter,
        session_factory=lambda cfg: browser,
        http_factory=lambda: session,
        **kwargs,
    )
    return harvester, events


@pytest.mark.asyncio
async def test_happy_path(config, tmp_path):
    session = FakeSession(site_routes())
    browser = FakeBrowser(site_pages())
    converted = []
    harvester, events = make_harvester(
        config, session, browser, converters=[lambda result: converted.append(len(result.pages))]
    )

    result = await harvester.harvest(SEED)
    job = result.job

    assert job.status is JobStatus.COMPLETED, job.error
    assert job.progress == 100
    assert [p.url for p in result.pages] == ["https://example.com/", "https://example.com/about"]
    assert sorted(a.filename for a in result.assets) == ["a.jpg", "s.css", "team.jpg"]
    assert job.assets == {"images": ["a.jpg", "team.jpg"], "css": ["s.css"]}
    assert job.metadata["title"] == "Example"
    assert job.metadata["total_pages"] == 2
    assert job.metadata["total_assets"] == 3
    assert job.metadata["asset_counts"] == {"images": 2, "css": 1}
    assert converted == [2]
    assert browser.entered and browser.exited
    assert session.closed

    job_dir = tmp_path / job.id
    assert (job_dir / "scraped" / "images" / "a.jpg").read_bytes() == JPEG_BYTES
    assert (job_dir / "scraped" / "css" / "s.css").exists()
    assert (job_dir / "scraped" / "html" / "index.html").read_text() == SEED_MARKUP
    assert (job_dir / "scraped" / "html" / "page-1.html").exists()
    manifest = json.loads((job_dir / "manifest.json").read_text())
    assert manifest["job"]["id"] == job.id
    assert [p["html"] for p in manifest["pages"]] == ["index.html", "page-1.html"]
    assert {a["filename"] for a in manifest["assets"]["images"]} == {"a.jpg", "team.jpg"}

    statuses = [e.status for e in events]
    assert statuses[0] is JobStatus.QUEUED
    assert statuses[-1] is JobStatus.COMPLETED
    for stage in (
        JobStatus.ANALYZING,
        JobStatus.DISCOVERING,
        JobStatus.SCRAPING,
        JobStatus.DOWNLOADING,
        JobStatus.CONVERTING,
        JobStatus.BUILDING,
    ):
        assert stage in statuses
    progress = [e.progress for e in events]
    assert progress == sorted(progress)
    assert progress[-1] == 100


@pytest.mark.asyncio
async def test_robots_disallow_stops_before_browser(config):
    session = FakeSession(
        {"https://example.com/robots.txt": FakeResponse(200, "User-agent: *\nDisallow: /\n")}
    )
    browser = FakeBrowser(site_pages())
    harvester, events = make_harvester(config, session, browser)

    result = await harvester.harvest(SEED)

    assert result.job.status is JobStatus.FAILED
    assert result.job.error == "Scraping not allowed by robots.txt"
    assert not browser.entered
    assert browser.fetched == []
    assert session.calls == ["https://example.com/robots.txt"]
    assert [e.status for e in events] == [JobStatus.QUEUED, JobStatus.FAILED]
    assert result.assets == [] and result.pages == []


@pytest.mark.asyncio
async def test_seed_failure_fails_job(config):
    browser = FakeBrowser()
    harvester, _ = make_harvester(config, FakeSession(), browser)
    result = await harvester.harvest(SEED)
    assert result.job.status is JobStatus.FAILED
    assert result.job.error.startswith("Failed to scrape main page")
    assert browser.exited


@pytest.mark.asyncio
async def test_other_page_failures_are_skipped(config):
    markup = SEED_MARKUP.replace("</body>", '<a href="/broken">Broken</a></body>')
    browser = FakeBrowser(site_pages(**{ROOT: snapshot(markup, ROOT)}))
    harvester, _ = make_harvester(config, FakeSession(site_routes()), browser)

    result = await harvester.harvest(SEED)

    assert result.job.status is JobStatus.COMPLETED
    assert "https://example.com/broken" in browser.fetched
    assert [p.url for p in result.pages] == ["https://example.com/", "https://example.com/about"]


@pytest.mark.asyncio
async def test_failing_converter_keeps_partial_results(config, tmp_path):
    def broken(result):
        raise RuntimeError("packaging failed")

    harvester, events = make_harvester(
        config, FakeSession(site_routes()), FakeBrowser(site_pages()), converters=[broken]
    )
    result = await harvester.harvest(SEED)

    assert result.job.status is JobStatus.FAILED
    assert result.job.error == "packaging failed"
    assert len(result.assets) == 3
    assert (tmp_path / result.job.id / "scraped" / "images" / "a.jpg").exists()
    assert not (tmp_path / result.job.id / "manifest.json").exists()
    assert events[-1].metadata == {"error": "packaging failed"}


@pytest.mark.asyncio
async def test_async_converter_is_awaited(config):
    seen = []

    async def convert(result):
        seen.append(result.job.status)

    harvester, _ = make_harvester(
        config, FakeSession(site_routes()), FakeBrowser(site_pages()), converters=[convert]
    )
    result = await harvester.harvest(SEED)
    assert result.job.status is JobStatus.COMPLETED
    assert seen == [JobStatus.CONVERTING]


@pytest.mark.asyncio
async def test_cancel_during_scraping(config):
    links = "".join(f'<a href="/p{i}">p{i}</a>' for i in range(5))
    pages = {ROOT: snapshot(links, ROOT)}
    pages.update(
        {f"https://example.com/p{i}": snapshot("<p></p>", f"https://example.com/p{i}") for i in range(5)}
    )
    browser = FakeBrowser(pages)
    reporter = ProgressReporter()
    harvester, _ = make_harvester(config, FakeSession(), browser, reporter=reporter)

    def cancel_on_scraping(event):
        if event.status is JobStatus.SCRAPING:
            harvester.cancel(event.job_id)

    reporter.subscribe(cancel_on_scraping)
    result = await harvester.harvest(SEED)

    assert result.job.status is JobStatus.FAILED
    assert result.job.error == "Job cancelled"
    assert browser.fetched == [ROOT]
    assert browser.exited
    assert harvester.cancel(result.job.id) is False


@pytest.mark.asyncio
async def test_failing_advisor_does_not_fail_job(config):
    config.use_suggestions = True
    generator = Mock()
    generator.complete.side_effect = RuntimeError("model crashed")
    harvester, _ = make_harvester(
        config, FakeSession(site_routes()), FakeBrowser(site_pages()), generator=generator
    )
    result = await harvester.harvest(SEED)
    assert result.job.status is JobStatus.COMPLETED
    assert "analysis" not in result.job.metadata
    assert generator.complete.call_count >= 1


@pytest.mark.asyncio
async def test_analysis_is_recorded(config):
    config.use_suggestions = True
    generator = Mock()
    generator.complete.return_value = "A small marketing site."
    harvester, _ = make_harvester(
        config, FakeSession(site_routes()), FakeBrowser(site_pages()), generator=generator
    )
    result = await harvester.harvest(SEED)
    assert result.job.status is JobStatus.COMPLETED
    assert result.job.metadata["analysis"] == "A small marketing site."


@pytest.mark.asyncio
async def test_log_stream_is_scoped_to_job(config):
    reporter = ProgressReporter()
    entries = []
    reporter.subscribe_logs(entries.append)
    harvester, _ = make_harvester(
        config, FakeSession(site_routes()), FakeBrowser(site_pages()), reporter=reporter
    )
    result = await harvester.harvest(SEED)

    assert entries
    assert {e.job_id for e in entries} == {result.job.id}
    categories = {e.category for e in entries}
    assert {"Setup", "Discovery", "Complete"} <= categories


def test_submit_rejects_invalid_url(config):
    harvester = Harvester(config, http_factory=FakeSession)
    with pytest.raises(ValueError):
        harvester.submit("mailto:someone@example.com")


@pytest.mark.asyncio
async def test_debug_logging_survives_a_running_job(config, caplog):
    caplog.set_level(logging.DEBUG)
    reporter = ProgressReporter()
    debug_enabled = []
    reporter.subscribe(
        lambda event: debug_enabled.append(logging.getLogger("mlx_harvest.cli").isEnabledFor(logging.DEBUG))
    )
    harvester, _ = make_harvester(
        config, FakeSession(site_routes()), FakeBrowser(site_pages()), reporter=reporter
    )
    result = await harvester.harvest(SEED)
    assert result.job.status is JobStatus.COMPLETED
    assert len(debug_enabled) > 2
    assert all(debug_enabled)


@pytest.mark.asyncio
async def test_sitemap_listing_the_root_keeps_the_full_budget(config):
    config.crawl_budget = 3
    xml = (
        "<urlset><url><loc>https://example.com/</loc></url>"
        "<url><loc>https://example.com/a</loc></url>"
        "<url><loc>https://example.com/b</loc></url></urlset>"
    )
    session = FakeSession(site_routes(**{"https://example.com/sitemap.xml": FakeResponse(200, xml)}))
    pages = site_pages(
        **{
            "https://example.com/a": snapshot("<p>a</p>", "https://example.com/a"),
            "https://example.com/b": snapshot("<p>b</p>", "https://example.com/b"),
        }
    )
    browser = FakeBrowser(pages)
    harvester, _ = make_harvester(config, session, browser)

    result = await harvester.harvest(SEED)

    assert result.job.status is JobStatus.COMPLETED
    assert browser.fetched == [ROOT, "https://example.com/a", "https://example.com/b"]
    assert len(result.pages) == 3
