"""Last selected bundle and the most-recently-used bundle list."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from appdeploy.storage.preferences import PreferenceStore

logger = logging.getLogger("appdeploy.bundles")

BUNDLE_SUFFIX = ".app"
MAX_RECENT = 5

LAST_BUNDLE_KEY = "LastAppBundlePath"
RECENT_BUNDLES_KEY = "RecentAppBundlePaths"


def is_bundle_path(path: str | Path) -> bool:
    return Path(path).suffix == BUNDLE_SUFFIX


class RecentBundleList:
    """Up to ``limit`` bundle paths, most recent first, no duplicates."""

    def __init__(self, paths: Iterable[str] = (), limit: int = MAX_RECENT) -> None:
        self.limit = limit
        self._paths: list[str] = []
        for path in paths:
            if path not in self._paths:
                self._paths.append(path)
        del self._paths[limit:]

    def add(self, path: str) -> None:
        """Move ``path`` to the front, inserting it if new."""
        if path in self._paths:
            self._paths.remove(path)
        self._paths.insert(0, path)
        del self._paths[self.limit:]

    def to_list(self) -> list[str]:
        return list(self._paths)

    def __len__(self) -> int:
        return len(self._paths)

    def __iter__(self):
        return iter(list(self._paths))

    def __contains__(self, path: object) -> bool:
        return path in self._paths


class BundleHistory:
    """Persists the last selected bundle and the recent list.

    Entries pointing at paths that are gone, or that aren't ``.app``
    bundles, are dropped when loading.
    """

    def __init__(self, store: PreferenceStore) -> None:
        self.store = store
        self.last: str | None = None
        self.recent = RecentBundleList()

    def load(self) -> None:
        paths = [p for p in self.store.load_list(RECENT_BUNDLES_KEY) if p]
        self.recent = RecentBundleList(p for p in paths if _is_existing_bundle(p))

        last = self.store.load_string(LAST_BUNDLE_KEY)
        if last and _is_existing_bundle(last):
            self.last = last
        else:
            self.last = None
            if last is not None:
                logger.info("Forgetting last bundle %s (missing or not an .app)", last)
                self.store.remove(LAST_BUNDLE_KEY)

    def remember(self, path: str) -> None:
        """Record ``path`` as the last selected bundle and push it to the recent list."""
        self.last = path
        self.store.save_string(LAST_BUNDLE_KEY, path)
        if not is_bundle_path(path):
            return
        self.recent.add(path)
        self.store.save_list(RECENT_BUNDLES_KEY, self.recent.to_list())


def _is_existing_bundle(path: str) -> bool:
    return is_bundle_path(path) and Path(path).exists()
