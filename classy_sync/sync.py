"""Streaming sync of one entity type for one organization.

Pages are fetched and applied one at a time: a page is upserted in full
before the next one is requested, so memory is bounded by the page size no
matter how large the organization's history is. Applied pages stay
committed if a later page fails, and the next run resumes from the newest
last_sync_at actually stored.
"""

import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Dict, List, Mapping, Optional

from fivetran_connector_sdk import Logging as log

from classy_sync.api import ClassyApiClient, filter_field
from classy_sync.config import SyncConfig
from classy_sync.errors import SyncCancelled
from classy_sync.models import parse_datetime, safe_str, utcnow
from classy_sync.repository import DANGLING_REFERENCE, EntityRepository, UpsertResult
from classy_sync.sync_state import SyncStateTracker


MODE_AUTO = "auto"
MODE_FULL = "full"
MODE_INCREMENTAL = "incremental"
SYNC_MODES = (MODE_AUTO, MODE_FULL, MODE_INCREMENTAL)


class SyncPhase(Enum):
    IDLE = "idle"
    FETCHING_PAGE = "fetching_page"
    APPLYING_BATCH = "applying_batch"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SyncResult:
    """Counts for one entity sync. Page results are merged into the run total."""

    entity_type: str
    mode: str
    total_processed: int = 0
    successful: int = 0
    skipped: int = 0
    failed: int = 0
    pages_fetched: int = 0
    written_ids: List[str] = field(default_factory=list)
    change_since: Optional[datetime] = None
    truncated: bool = False
    # Page the next run continues from when truncated
    next_page: Optional[int] = None
    dry_run: bool = False

    def merge(self, other: "SyncResult") -> "SyncResult":
        return replace(
            self,
            total_processed=self.total_processed + other.total_processed,
            successful=self.successful + other.successful,
            skipped=self.skipped + other.skipped,
            failed=self.failed + other.failed,
            pages_fetched=self.pages_fetched + other.pages_fetched,
            written_ids=self.written_ids + other.written_ids,
            truncated=self.truncated or other.truncated,
        )

    def summary(self) -> str:
        return (
            f"processed={self.total_processed}, succeeded={self.successful}, "
            f"skipped={self.skipped}, failed={self.failed}, pages={self.pages_fetched}"
        )


class StreamingSyncEngine:
    """Fetch-then-apply loop over one entity's pages.

    Args:
        client: Authenticated API client for the organization being synced.
        repositories: Entity repositories keyed by entity type.
        tracker: Sync state tracker on the same store.
        config: Process configuration.
        sleep: Delay function between pages.
    """

    def __init__(
        self,
        client: ClassyApiClient,
        repositories: Dict[str, EntityRepository],
        tracker: SyncStateTracker,
        config: SyncConfig,
        sleep=time.sleep,
    ):
        self.client = client
        self.repositories = repositories
        self.tracker = tracker
        self.config = config
        self.sleep = sleep
        self.phase = SyncPhase.IDLE
        # Counts of the most recent run, kept when it fails part way
        self.last_result: Optional[SyncResult] = None

    def _set_phase(self, phase: SyncPhase, context: str) -> None:
        if phase != self.phase:
            log.fine(f"{context} {self.phase.value} -> {phase.value}")
        self.phase = phase

    def resolve_window(self, organization_id: int, entity_type: str, mode: str):
        """Decide the effective mode and change-since timestamp for a run."""
        if mode not in SYNC_MODES:
            raise ValueError(f"Unknown sync mode: {mode}")
        if mode == MODE_FULL:
            return MODE_FULL, None

        window_start = self.tracker.incremental_window_start(organization_id, entity_type)
        if window_start is None:
            # No rows yet for this entity
            return MODE_FULL, None
        return MODE_INCREMENTAL, window_start

    def sync_entity(
        self,
        organization: Mapping,
        entity_type: str,
        mode: str = MODE_AUTO,
        cancel_event: Optional[threading.Event] = None,
        dry_run: bool = False,
    ) -> SyncResult:
        """Sync one entity type for one organization.

        A full pass stopped at the record cap leaves a resume point; the next
        non-dry run continues it from that page, whatever mode is asked for.

        Args:
            organization: Organization row; needs "id" and "classy_id".
            entity_type: campaigns, supporters, recurring_plans or transactions.
            mode: auto, full or incremental.
            cancel_event: Checked before every page fetch.
            dry_run: Fetch and count without writing anything.

        Returns:
            The merged SyncResult for the whole run.

        Raises:
            AuthenticationError: Credentials were rejected.
            ApiRequestError: A page fetch failed after all retries.
            SyncCancelled: cancel_event was set between pages.
        """
        organization_id = organization["id"]
        context = f"[org {organization_id}][{entity_type}]"
        repository = self.repositories[entity_type]
        self.last_result = None

        if mode not in SYNC_MODES:
            raise ValueError(f"Unknown sync mode: {mode}")

        # Rows are stamped with the run start so changes made while the run
        # is in progress fall inside the next window.
        started_at = utcnow()
        page_number = 1
        resume = None if dry_run else self.tracker.resume_point(organization_id, entity_type)
        if resume is not None:
            # An unfinished full pass is completed before any incremental run
            effective_mode, change_since = MODE_FULL, None
            page_number = resume["next_page"]
            started_at = resume["started_at"]
        else:
            effective_mode, change_since = self.resolve_window(organization_id, entity_type, mode)

        result = SyncResult(
            entity_type=entity_type,
            mode=effective_mode,
            change_since=change_since,
            dry_run=dry_run,
        )
        self.last_result = result

        if resume is not None:
            log.info(f"{context} Resuming full sync at page {page_number}")
        elif change_since:
            log.info(f"{context} Starting incremental sync of changes after {change_since}")
        else:
            log.info(f"{context} Starting full sync")

        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    raise SyncCancelled(f"{context} Sync cancelled before page {page_number}")

                self._set_phase(SyncPhase.FETCHING_PAGE, context)
                page = self.client.fetch_page(
                    organization["classy_id"], entity_type, page_number, change_since
                )

                self._set_phase(SyncPhase.APPLYING_BATCH, context)
                page_result = self._apply_page(
                    repository,
                    organization_id,
                    page.records,
                    result,
                    dry_run,
                )
                if not dry_run and page_result.written_ids:
                    self.tracker.record_sync_completion(
                        page_result.written_ids, organization_id, entity_type, synced_at=started_at
                    )
                result = result.merge(page_result)
                self.last_result = result

                every = self.config.progress_every_pages
                if every and result.pages_fetched % every == 0:
                    log.info(
                        f"{context} Progress: page {page_number}/{page.total_pages}, {result.summary()}"
                    )

                if not page.records or not page.has_more:
                    break

                if (
                    effective_mode == MODE_FULL
                    and self.config.max_records_per_sync
                    and result.total_processed >= self.config.max_records_per_sync
                ):
                    next_page = page_number + 1
                    log.warning(
                        f"{context} Reached the record cap of {self.config.max_records_per_sync}; "
                        f"stopping after page {page_number}, next run resumes at page {next_page}"
                    )
                    if not dry_run:
                        self.tracker.save_resume_point(organization_id, entity_type, next_page, started_at)
                    result = replace(result, truncated=True, next_page=next_page)
                    self.last_result = result
                    break

                page_number += 1
                if self.config.inter_page_delay > 0:
                    self.sleep(self.config.inter_page_delay)

        except Exception:
            self._set_phase(SyncPhase.FAILED, context)
            log.warning(f"{context} Sync stopped after {result.pages_fetched} page(s): {result.summary()}")
            raise

        if resume is not None and not result.truncated:
            self.tracker.clear_resume_point(organization_id, entity_type)
        self._set_phase(SyncPhase.DONE, context)
        log.info(f"{context} Sync complete ({effective_mode}{', dry run' if dry_run else ''}): {result.summary()}")
        return result

    def _apply_page(
        self,
        repository: EntityRepository,
        organization_id: int,
        records: List[dict],
        run_so_far: SyncResult,
        dry_run: bool,
    ) -> SyncResult:
        entity_type = repository.entity_type
        context = f"[org {organization_id}][{entity_type}]"
        page_result = SyncResult(entity_type=entity_type, mode=run_so_far.mode, pages_fetched=1)

        for record in records:
            page_result.total_processed += 1

            try:
                if dry_run:
                    record_id = repository.map_record(record).get("id")
                    outcome = UpsertResult(
                        record_id=record_id, written=bool(record_id), reason=None if record_id else "missing_id"
                    )
                else:
                    outcome = repository.upsert(record, organization_id)
            except Exception as e:
                record_id = record.get("id") if isinstance(record, dict) else None
                outcome = UpsertResult(record_id=safe_str(record_id), reason=type(e).__name__, detail=str(e))

            if dry_run:
                if outcome.written:
                    page_result.successful += 1
                else:
                    page_result.failed += 1
                continue

            if outcome.skipped:
                outcome = self._record_skip(organization_id, entity_type, record, outcome)

            if outcome.written:
                page_result.successful += 1
                page_result.written_ids.append(outcome.record_id)
            elif outcome.skipped:
                page_result.skipped += 1
                log.fine(f"{context} Skipped record {outcome.record_id}: {outcome.reason} ({outcome.detail})")
            else:
                page_result.failed += 1
                failures = run_so_far.failed + page_result.failed
                if failures <= self.config.max_logged_record_errors:
                    log.warning(
                        f"{context} Failed to upsert record {outcome.record_id}: "
                        f"{outcome.reason} {outcome.detail or ''}".rstrip()
                    )
                elif failures == self.config.max_logged_record_errors + 1:
                    log.warning(f"{context} Further record failures in this run are counted but not logged")

        return page_result

    def _record_skip(
        self,
        organization_id: int,
        entity_type: str,
        record: dict,
        outcome: UpsertResult,
    ) -> UpsertResult:
        """Count a soft-reference skip, demoting it to a failure past the limit."""
        source_timestamp = parse_datetime(record.get(filter_field(entity_type)))
        skip_count = self.tracker.record_skip(
            organization_id, entity_type, outcome.record_id, outcome.reason, source_timestamp
        )
        if skip_count <= self.config.max_reference_skips:
            return outcome

        self.tracker.clear_skip(organization_id, entity_type, outcome.record_id)
        return UpsertResult(
            record_id=outcome.record_id,
            reason=DANGLING_REFERENCE,
            detail=f"{outcome.detail} still missing after {skip_count - 1} passes",
        )
