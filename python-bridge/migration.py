"""
Per-listing upload pipeline and the background migration run that feeds it.
"""

import logging
import random
import threading
from collections.abc import Iterable
from dataclasses import dataclass

from bridge_settings import Settings
from category_matcher import CategoryMatcher
from goods_form import submit_goods
from image_prep import download_and_upload_images
from listing_extractor import ListingExtractor, PageFetcher
from listing_models import ProductRecord, SubmissionResult, TargetCategory
from manjaro_client import ManjaroClient
from manjaro_errors import ManjaroError, PollCancelled, RunAlreadyActive
from poller import CancelToken
from product_store import STATUS_COMPLETED, STATUS_FAILED, STATUS_PROCESSING, ProductStore
from spec_mapper import map_specifications

logger = logging.getLogger(__name__)


class ListingUploader:
    """category -> images -> shipping template -> schema -> attributes -> submit, for one listing."""

    def __init__(
        self,
        client: ManjaroClient,
        matcher: CategoryMatcher | None,
        settings: Settings,
        rng: random.Random | None = None,
    ):
        self.client = client
        self.matcher = matcher
        self.settings = settings
        self.rng = rng or random.Random()

    def default_category(self) -> TargetCategory:
        known = self.matcher.catalog.get(self.settings.default_category_id) if self.matcher else None
        if known is not None:
            return known
        name = self.settings.default_category_name
        return TargetCategory(
            id=self.settings.default_category_id,
            display_name=name.rsplit(">", 1)[-1].strip(),
            full_path_label=name,
        )

    def resolve_category(self, source_label: str | None) -> TargetCategory:
        matched = self.matcher.resolve(source_label) if self.matcher else None
        if matched is None:
            matched = self.default_category()
            logger.info("Using default category %s (%s)", matched.id, matched.full_path_label)
        return matched

    def upload(self, record: ProductRecord, cancel: CancelToken | None = None) -> SubmissionResult:
        """Expected failures come back as a failed result; only PollCancelled propagates."""
        logger.info("Uploading %r", (record.title or "")[:50])
        try:
            category = self.resolve_category(record.source_category_label)

            images = download_and_upload_images(self.client, record.images)
            if not images:
                return SubmissionResult.failed("image upload failed")

            templates = self.client.get_transport_list(cancel)
            if not templates:
                return SubmissionResult.failed("no shipping template available")

            specs = self.client.get_category_specs(category.id, cancel)
            assignments = map_specifications(category.id, specs, record.attributes, self.client)

            return submit_goods(self.client, record, category, images, templates[0], assignments, self.rng)
        except PollCancelled:
            raise
        except ManjaroError as e:
            logger.warning("Upload failed [%s]: %s", e.code, e.message)
            return SubmissionResult.failed(e.message)
        except ValueError as e:
            return SubmissionResult.failed(str(e))


@dataclass(frozen=True)
class ProgressSnapshot:
    running: bool = False
    total: int = 0
    processed: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0
    current_url: str = ""

    def to_dict(self) -> dict:
        return {
            "running": self.running,
            "total": self.total,
            "processed": self.processed,
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
            "currentUrl": self.current_url,
        }


class RunContext:
    """Counters and stop signal of one run. Written only by the run thread."""

    def __init__(self, total: int):
        self.cancel = CancelToken()
        self.running = True
        self.total = total
        self.processed = 0
        self.success = 0
        self.failed = 0
        self.skipped = 0
        self.current_url = ""

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            running=self.running,
            total=self.total,
            processed=self.processed,
            success=self.success,
            failed=self.failed,
            skipped=self.skipped,
            current_url=self.current_url,
        )


class MigrationRunner:
    """At most one run at a time, processed sequentially on a daemon thread."""

    def __init__(
        self,
        uploader: ListingUploader,
        fetcher: PageFetcher,
        extractor: ListingExtractor,
        store: ProductStore,
        pacing_delay: float = 2.0,
    ):
        self.uploader = uploader
        self.fetcher = fetcher
        self.extractor = extractor
        self.store = store
        self.pacing_delay = pacing_delay
        self._lock = threading.Lock()
        self._context: RunContext | None = None
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._context is not None and self._context.running

    def start(self, urls: Iterable[str]) -> RunContext:
        urls = list(urls)
        with self._lock:
            if self.running:
                raise RunAlreadyActive("a migration run is already active", 409)
            ctx = RunContext(len(urls))
            self._context = ctx
            self._thread = threading.Thread(
                target=self.run, args=(ctx, urls), name="migration-run", daemon=True
            )
            self._thread.start()
        logger.info("Migration run started: %d urls", len(urls))
        return ctx

    def stop(self) -> bool:
        """Signal the active run to stop; blocked polls and the pacing wait unwind at once."""
        ctx = self._context
        if ctx is None or not ctx.running:
            return False
        ctx.cancel.cancel()
        logger.info("Migration run stop requested")
        return True

    def progress(self) -> ProgressSnapshot:
        ctx = self._context
        return ctx.snapshot() if ctx is not None else ProgressSnapshot()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def run(self, ctx: RunContext, urls: list[str]) -> None:
        try:
            for url in urls:
                if ctx.cancel.cancelled:
                    break
                ctx.current_url = url
                if self.store.exists(url):
                    ctx.skipped += 1
                    ctx.processed += 1
                    continue
                try:
                    self.process(ctx, url)
                except PollCancelled:
                    logger.info("Run cancelled while processing %s", url)
                    break
                except Exception:
                    ctx.failed += 1
                    logger.exception("Processing %s failed", url)
                ctx.processed += 1
        finally:
            ctx.running = False
            ctx.current_url = ""
            logger.info(
                "Migration run finished: %d succeeded, %d failed, %d skipped",
                ctx.success, ctx.failed, ctx.skipped,
            )

    def process(self, ctx: RunContext, url: str) -> None:
        record = self.extractor.extract(self.fetcher.fetch(url), url)
        if not record.title:
            logger.warning("No title extracted from %s", url)
            ctx.failed += 1
            return

        product_id = self.store.save(record)
        self.store.update_status(product_id, STATUS_PROCESSING)
        try:
            result = self.uploader.upload(record, ctx.cancel)
        except PollCancelled:
            self.store.update_status(product_id, STATUS_FAILED, "cancelled")
            raise
        except Exception as e:
            self.store.update_status(product_id, STATUS_FAILED, str(e) or type(e).__name__)
            raise

        if result.success:
            ctx.success += 1
            self.store.update_status(product_id, STATUS_COMPLETED)
            logger.info("Uploaded %r as commonid=%s", (record.title or "")[:30], result.created_id)
        else:
            ctx.failed += 1
            self.store.update_status(product_id, STATUS_FAILED, result.error_message)
            logger.warning("Upload failed: %s", result.error_message)

        ctx.cancel.wait(self.pacing_delay)
