import asyncio
import threading

import pytest

from docchat.utils.helpers import build_sources, bullet_lines, extract_page_references, run_in_thread
from docchat.vectorstores import SearchHit


def test_build_sources_preview_and_rounding():
    hits = [SearchHit("c1", "x" * 250, 4, 0.81234, "keyword"), SearchHit("c2", "short", 1, 0.5)]

    sources = build_sources(hits)

    assert [s["chunk_id"] for s in sources] == ["c1", "c2"]
    assert sources[0]["preview"] == "x" * 200 + "..."
    assert sources[0]["score"] == 0.812
    assert sources[0]["search_type"] == "keyword"
    assert sources[1]["preview"] == "short"


def test_extract_page_references():
    answer = "See page 3 and p. 7, with details on pp. 10-12 (Page 1)."

    assert extract_page_references(answer) == {1, 3, 7, 10, 11, 12}
    assert extract_page_references("No references here.") == set()


def test_reversed_range_counts_first_page_only():
    assert extract_page_references("pages 9-4") == set()
    assert extract_page_references("page 9-4") == {9}


def test_bullet_lines():
    text = "Key insights:\n• First point\n- Second point\n  * Third point\n-\nNot a bullet"

    assert bullet_lines(text) == ["First point", "Second point", "Third point"]


@pytest.mark.asyncio
async def test_run_in_thread_returns_result():
    assert await run_in_thread(sum, [1, 2, 3]) == 6


@pytest.mark.asyncio
async def test_cancelled_run_in_thread_waits_for_worker():
    started, release = threading.Event(), threading.Event()
    finished = []

    def work():
        started.set()
        release.wait(5)
        finished.append(True)

    task = asyncio.create_task(run_in_thread(work))
    await asyncio.to_thread(started.wait, 5)
    task.cancel()
    await asyncio.sleep(0.05)
    assert not task.done()
    release.set()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert finished == [True]
