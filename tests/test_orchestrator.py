"""Tests for the crawl orchestrator's thread/page state machine."""

import copy

import pytest

from forumharvest.config import CrawlConfig
from forumharvest.errors import MemoryExhaustion, PersistenceFailure
from forumharvest.guardian import ResourceGuardian
from forumharvest.memstore import InMemoryStore
from forumharvest.models import ForumThread, ThreadSummary
from forumharvest.orchestrator import CrawlOrchestrator, ThreadState, resume_page
from forumharvest.retry import Pacer, RetryPolicy
from forumharvest.pipeline import MediaPipeline

from conftest import (
    FakeExtractor,
    FakeFetcher,
    FakeHost,
    FakeObjectStore,
    at,
    make_config,
    no_sleep,
    post,
)

A = "https://x.test/data/a.png"
B = "https://x.test/data/b.png"


def page_url(thread_id, page_no):
    return f"https://forum.test/t{thread_id}/p{page_no}"


def build(cfg, browser, extractor, store, *, pipeline=None, host=None):
    host = host or FakeHost(browser)
    guardian = ResourceGuardian(
        cfg.guardian, host, pages_before_recycle=cfg.crawl.pages_before_recycle
    )
    return CrawlOrchestrator(
        cfg, browser, extractor, store, guardian, pipeline, pacer=Pacer(0, sleep=no_sleep)
    ), host


def make_media_pipeline(cfg, store=None):
    return MediaPipeline(
        cfg.pipeline, FakeFetcher(), store or FakeObjectStore(),
        retry=RetryPolicy(cfg.pipeline.max_attempts, 0.0, sleep=no_sleep),
    )


class ExhaustAtCheckpoint(InMemoryStore):
    """Flags memory exhaustion the moment ``page`` is checkpointed."""

    def __init__(self, page):
        super().__init__()
        self.page = page
        self.guardian = None

    def update_checkpoint(self, thread_id, last_synced_page, synced_through_at=None):
        super().update_checkpoint(thread_id, last_synced_page, synced_through_at)
        if last_synced_page == self.page and self.guardian is not None:
            self.guardian.exhausted = True
            self.guardian.last_sample_mb = 90.0


class FailingCommits(InMemoryStore):
    def __init__(self):
        super().__init__()
        self.fail_commits = 0

    def commit(self):
        if self.fail_commits:
            self.fail_commits -= 1
            raise PersistenceFailure("connection lost")
        super().commit()


class ServesLastPage(FakeExtractor):
    """Out-of-range page numbers render the last page, as XenForo does."""

    async def extract_posts(self, page):
        head, _, page_no = page.url.rpartition("/p")
        pages = self.threads[int(head.rpartition("/t")[2])]
        page_no = int(page_no)
        return list(pages[min(page_no, len(pages)) - 1])


def seed(store, thread_id, activity, **checkpoint):
    store.add_thread(ForumThread(thread_id=thread_id, title=f"t{thread_id}",
                                 last_activity_at=activity, **checkpoint))


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def three_pages(extractor, store):
    extractor.threads[5] = [[post(51), post(52)], [post(53)], [post(54)]]
    seed(store, 5, at(10))
    return extractor


class TestResumePage:
    def test_never_synced_starts_at_one(self):
        assert resume_page(ForumThread(1)) == 1

    def test_interrupted_sync_continues_after_checkpoint(self):
        assert resume_page(ForumThread(1, last_synced_page=1)) == 2

    def test_new_activity_rereads_last_page(self):
        thread = ForumThread(1, last_synced_page=4, synced_through_at=at(0), last_activity_at=at(5))
        assert resume_page(thread) == 4


class TestPageRetries:
    @pytest.mark.asyncio
    async def test_page_recovers_on_third_attempt(self, cfg, browser, three_pages, store):
        browser.failures[page_url(5, 2)] = 2
        orch, host = build(cfg, browser, three_pages, store)

        outcomes = await orch.run_pass()

        assert [o.state for o in outcomes] == [ThreadState.COMPLETED]
        assert outcomes[0].last_page == 3
        thread = store.get_thread(5)
        assert thread.last_synced_page == 3
        assert thread.synced_through_at == at(10)
        assert host.browser_restarts == 2
        assert orch.stats["page_retries"] == 2
        assert browser.visits == [page_url(5, 1)] + [page_url(5, 2)] * 3 + [page_url(5, 3)]

    @pytest.mark.asyncio
    async def test_exhausted_page_abandons_thread_and_resumes_next_run(
        self, cfg, browser, three_pages, store
    ):
        browser.failures[page_url(5, 2)] = 3
        orch, _ = build(cfg, browser, three_pages, store)

        outcomes = await orch.run_pass()

        assert outcomes[0].state is ThreadState.EXHAUSTED
        thread = store.get_thread(5)
        assert thread.last_synced_page == 1
        assert thread.synced_through_at is None
        assert orch.stats["abandoned"] == 1
        assert 53 not in store.posts

        browser.visits.clear()
        outcomes = await orch.run_pass()

        assert browser.visits[0] == page_url(5, 2)
        assert outcomes[0].state is ThreadState.COMPLETED
        assert store.get_thread(5).last_synced_page == 3

    @pytest.mark.asyncio
    async def test_extractor_exception_counts_as_failed_attempt(
        self, cfg, browser, three_pages, store
    ):
        three_pages.broken_urls.add(page_url(5, 1))
        orch, host = build(cfg, browser, three_pages, store)

        outcome = await orch.sync_thread(store.get_thread(5))

        assert outcome.state is ThreadState.EXHAUSTED
        assert outcome.last_page is None
        assert host.browser_restarts == cfg.crawl.page_attempts - 1
        assert store.get_thread(5).last_synced_page is None

    @pytest.mark.asyncio
    async def test_page_without_posts_is_a_failure(self, cfg, browser, extractor, store):
        extractor.threads[6] = [[]]
        seed(store, 6, at(1))
        orch, _ = build(cfg, browser, extractor, store)
        outcome = await orch.sync_thread(store.get_thread(6))
        assert outcome.state is ThreadState.EXHAUSTED


class TestSelection:
    @pytest.mark.asyncio
    async def test_fully_synced_thread_is_skipped(self, cfg, browser, extractor, store):
        extractor.threads[7] = [[post(71)]]
        seed(store, 7, at(3), last_synced_page=1, synced_through_at=at(3))
        orch, _ = build(cfg, browser, extractor, store)
        assert await orch.run_pass() == []
        assert browser.visits == []

    @pytest.mark.asyncio
    async def test_only_owned_threads_most_recent_first(self, browser, extractor, store):
        cfg = make_config(worker_index=0, worker_count=2)
        for thread_id, minute in [(1, 50), (2, 5), (3, 40), (4, 20)]:
            extractor.threads[thread_id] = [[post(thread_id * 10)]]
            seed(store, thread_id, at(minute))
        orch, _ = build(cfg, browser, extractor, store)

        await orch.run_pass()

        assert browser.visits == [page_url(4, 1), page_url(2, 1)]
        assert store.get_thread(1).synced_through_at is None
        assert store.get_thread(3).synced_through_at is None

    @pytest.mark.asyncio
    async def test_limit(self, cfg, browser, extractor, store):
        for thread_id, minute in [(1, 1), (2, 2), (3, 3)]:
            extractor.threads[thread_id] = [[post(thread_id * 10)]]
            seed(store, thread_id, at(minute))
        orch, _ = build(cfg, browser, extractor, store)
        outcomes = await orch.run_pass(limit=2)
        assert [o.thread_id for o in outcomes] == [3, 2]


class TestCheckpoints:
    @pytest.mark.asyncio
    async def test_last_synced_page_never_decreases(self, cfg, browser, three_pages, store):
        orch, _ = build(cfg, browser, three_pages, store)
        seen = []
        await orch.run_pass()
        seen.append(store.get_thread(5).last_synced_page)

        # new replies land on the last page, then spill onto a fourth
        store.upsert_thread(ThreadSummary(thread_id=5, title="t5", last_activity_at=at(20)))
        store.commit()
        three_pages.threads[5].append([post(55)])
        browser.visits.clear()
        await orch.run_pass()
        seen.append(store.get_thread(5).last_synced_page)

        store.upsert_thread(ThreadSummary(thread_id=5, title="t5", last_activity_at=at(30)))
        store.commit()
        await orch.run_pass()
        seen.append(store.get_thread(5).last_synced_page)

        assert seen == [3, 4, 4]
        assert browser.visits[:2] == [page_url(5, 3), page_url(5, 4)]
        assert store.get_thread(5).synced_through_at == at(30)

    @pytest.mark.asyncio
    async def test_rescrape_is_idempotent(self, cfg, browser, three_pages, store):
        orch, _ = build(cfg, browser, three_pages, store)
        await orch.run_pass()
        first = copy.deepcopy(store.posts)

        await orch.sync_thread(ForumThread(5, last_activity_at=at(10)))

        assert store.posts == first
        assert len(store.posts) == 4

    @pytest.mark.asyncio
    async def test_exhaustion_after_last_page_leaves_thread_complete(self, cfg, browser, extractor):
        store = ExhaustAtCheckpoint(page=3)
        extractor.threads[5] = [[post(51)], [post(52)], [post(53)]]
        seed(store, 5, at(10))
        orch, _ = build(cfg, browser, extractor, store)
        store.guardian = orch.guardian

        with pytest.raises(MemoryExhaustion):
            await orch.run_pass()

        thread = store.get_thread(5)
        assert thread.last_synced_page == 3
        assert thread.synced_through_at == at(10)

        orch.guardian.exhausted = False
        browser.visits.clear()
        assert await orch.run_pass() == []
        assert browser.visits == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("extractor_cls", [FakeExtractor, ServesLastPage])
    async def test_resume_past_the_end_rereads_last_page(self, cfg, browser, store, extractor_cls):
        extractor = extractor_cls()
        extractor.threads[5] = [[post(51)], [post(52)], [post(53)]]
        # last page committed, completion never recorded
        seed(store, 5, at(10), last_synced_page=3)
        orch, _ = build(cfg, browser, extractor, store)

        [outcome] = await orch.run_pass()

        assert outcome.state is ThreadState.COMPLETED
        assert outcome.last_page == 3
        assert browser.visits == [page_url(5, 4), page_url(5, 3)]
        thread = store.get_thread(5)
        assert thread.last_synced_page == 3
        assert thread.synced_through_at == at(10)

    @pytest.mark.asyncio
    async def test_thread_shorter_than_checkpoint(self, cfg, browser, extractor, store):
        extractor.threads[5] = [[post(51)], [post(52)], [post(53)]]
        seed(store, 5, at(10), last_synced_page=5, synced_through_at=at(0))
        orch, _ = build(cfg, browser, extractor, store)

        [outcome] = await orch.run_pass()

        assert outcome.state is ThreadState.COMPLETED
        assert browser.visits == [page_url(5, 5), page_url(5, 3)]
        thread = store.get_thread(5)
        assert thread.last_synced_page == 5
        assert thread.synced_through_at == at(10)
        assert not thread.needs_sync


class TestMedia:
    @pytest.mark.asyncio
    async def test_replace_on_rescrape(self, cfg, browser, extractor, store):
        objects = FakeObjectStore()
        extractor.threads[8] = [[post(81, A, B)]]
        seed(store, 8, at(1))
        orch, _ = build(cfg, browser, extractor, store, pipeline=make_media_pipeline(cfg, objects))

        await orch.run_pass()
        assert {m.link for m in store.post_media(81)} == {
            "https://cdn.test/forum-media/8/81/0-a.png",
            "https://cdn.test/forum-media/8/81/1-b.png",
        }

        extractor.threads[8] = [[post(81, A)]]
        store.upsert_thread(ThreadSummary(thread_id=8, title="t8", last_activity_at=at(2)))
        store.commit()
        await orch.run_pass()

        assert [m.link for m in store.post_media(81)] == ["https://cdn.test/forum-media/8/81/0-a.png"]
        assert set(objects.objects) == {"forum-media/8/81/0-a.png"}
        assert orch.stats["media"] == 3

    @pytest.mark.asyncio
    async def test_no_media_leaves_rows_alone(self, browser, extractor, store):
        cfg = make_config(download_media=False)
        extractor.threads[8] = [[post(81, A)]]
        seed(store, 8, at(1))
        orch, _ = build(cfg, browser, extractor, store, pipeline=make_media_pipeline(cfg))
        await orch.run_pass()
        assert orch.pipeline is None
        assert store.post_media(81) == []
        assert 81 in store.posts

    @pytest.mark.asyncio
    async def test_failed_commit_keeps_stale_objects(self, cfg, browser, extractor):
        store = FailingCommits()
        objects = FakeObjectStore()
        extractor.threads[8] = [[post(81, A, B)]]
        seed(store, 8, at(1))
        orch, _ = build(cfg, browser, extractor, store, pipeline=make_media_pipeline(cfg, objects))
        await orch.run_pass()

        extractor.threads[8] = [[post(81, A)]]
        store.upsert_thread(ThreadSummary(thread_id=8, title="t8", last_activity_at=at(2)))
        store.commit()
        store.fail_commits = cfg.crawl.page_attempts
        [outcome] = await orch.run_pass()

        assert outcome.state is ThreadState.EXHAUSTED
        assert set(objects.objects) == {"forum-media/8/81/0-a.png", "forum-media/8/81/1-b.png"}
        assert len(store.post_media(81)) == 2

        await orch.run_pass()
        assert set(objects.objects) == {"forum-media/8/81/0-a.png"}
        assert len(store.post_media(81)) == 1


class TestGuardianConsultation:
    @pytest.mark.asyncio
    async def test_recycles_between_pages_on_budget(self, browser, three_pages, store):
        cfg = make_config(crawl=CrawlConfig(thread_pacing=0, pages_before_recycle=2))
        orch, host = build(cfg, browser, three_pages, store)
        await orch.run_pass()
        assert host.browser_restarts == 1
        assert orch.guardian.pages_since_recycle == 1

    @pytest.mark.asyncio
    async def test_memory_exhaustion_stops_the_pass(self, cfg, browser, three_pages, store):
        orch, _ = build(cfg, browser, three_pages, store)
        orch.guardian.exhausted = True
        orch.guardian.last_sample_mb = 90.0
        with pytest.raises(MemoryExhaustion):
            await orch.run_pass()
        assert browser.visits == []
