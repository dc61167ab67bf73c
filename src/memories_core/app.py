"""Wire the stores, gateway, synchronizer and feed into one application context."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable

from memories_core.capture import CaptureService
from memories_core.config import AppConfig, ConfigSnapshot
from memories_core.connectivity import ConnectivityMonitor, http_probe
from memories_core.feed.merger import FeedMerger
from memories_core.feed.repository import UnifiedFeedRepository
from memories_core.gateway.client import SupabaseClient
from memories_core.gateway.save import SupabaseSaveGateway
from memories_core.memory.previews import LocalPreviewIndex
from memories_core.memory.queue import OfflineMemoryQueue
from memories_core.memory.store import FileKeyValueStore, KeyValueStore, clean_stale_locks
from memories_core.sync.synchronizer import MemorySynchronizer

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AppContext:
    config: AppConfig
    config_snapshot: ConfigSnapshot
    store: KeyValueStore
    queue: OfflineMemoryQueue
    previews: LocalPreviewIndex
    connectivity: ConnectivityMonitor
    client: SupabaseClient
    gateway: SupabaseSaveGateway
    synchronizer: MemorySynchronizer
    feed: FeedMerger
    capture: CaptureService


def _default_probe(config: AppConfig) -> Callable[[], bool] | None:
    url = config.connectivity.probe_url.strip()
    if not url and config.backend.url:
        url = f"{config.backend.url.rstrip('/')}/rest/v1/"
    if not url:
        return None
    return http_probe(url, timeout_seconds=config.connectivity.timeout_seconds)


def build_context(
    config: AppConfig,
    snapshot: ConfigSnapshot,
    *,
    store: KeyValueStore | None = None,
    probe: Callable[[], bool] | None = None,
) -> AppContext:
    if store is None:
        prefs_root = Path(config.paths.data_root) / "prefs"
        prefs_root.mkdir(parents=True, exist_ok=True)
        scanned = clean_stale_locks(prefs_root)
        if scanned.removed:
            logger.info("app: removed %s stale lock files", scanned.removed)
        store = FileKeyValueStore(config.paths.data_root)

    queue = OfflineMemoryQueue(store)
    previews = LocalPreviewIndex(store)
    connectivity = ConnectivityMonitor(
        probe if probe is not None else _default_probe(config),
        poll_seconds=config.connectivity.poll_seconds,
    )
    client = SupabaseClient(config.backend)
    gateway = SupabaseSaveGateway(
        client,
        connectivity.is_online,
        upload_timeout_seconds=config.backend.upload_timeout_seconds,
    )
    synchronizer = MemorySynchronizer(
        queue,
        connectivity,
        gateway,
        interval_seconds=config.sync.interval_seconds,
        max_retries=config.sync.max_retries,
    )
    feed = FeedMerger(
        UnifiedFeedRepository(gateway),
        queue,
        previews,
        connectivity,
        preview_multiplier=config.feed.preview_multiplier,
    )
    return AppContext(
        config=config,
        config_snapshot=snapshot,
        store=store,
        queue=queue,
        previews=previews,
        connectivity=connectivity,
        client=client,
        gateway=gateway,
        synchronizer=synchronizer,
        feed=feed,
        capture=CaptureService(gateway, queue, previews, connectivity),
    )


def status_summary(context: AppContext) -> dict[str, Any]:
    """Queue, preview and sync state for the ``sync status`` command."""
    return {
        "config_valid": context.config_snapshot.valid,
        "config_issues": context.config_snapshot.issues,
        "backend_configured": context.client.configured,
        "online": context.connectivity.is_online(),
        "queue": context.queue.status_summary(),
        "previews": context.previews.count(),
        "auto_sync": asdict(context.synchronizer.auto_sync_status()),
    }
