"""
Reclaiming image files of removed or replaced product images.

Cleanup is best effort and never fails the request that triggered it. Every
URL that could not be removed is recorded in the ``image_cleanup``
collection so it shows up in the admin API and is retried at startup.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Sequence

from fastapi import BackgroundTasks
from pymongo.errors import PyMongoError

from images import ImageStore, StorageError
from schemas import utcnow

logger = logging.getLogger(__name__)


class ImageCleanup:
    def __init__(self, store: ImageStore, database, max_workers: int = 4):
        self.store = store
        self.database = database
        self.max_workers = max_workers

    @property
    def collection(self):
        return self.database["image_cleanup"]

    def _record_failure(self, url: str) -> None:
        try:
            self.collection.update_one(
                {"url": url},
                {
                    "$setOnInsert": {"createdAt": utcnow()},
                    "$set": {"lastAttemptAt": utcnow()},
                    "$inc": {"attempts": 1},
                },
                upsert=True,
            )
        except PyMongoError:
            logger.exception("Could not record failed cleanup of %s", url)

    def reconcile(self, old_assets: Iterable, new_assets: Iterable = ()) -> List[str]:
        failed = self.store.reconcile_images(list(old_assets or []), list(new_assets or []))
        for url in failed:
            self._record_failure(url)
        return failed

    def reconcile_many(self, asset_lists: Sequence[Sequence[Dict[str, Any]]]) -> int:
        """Remove every image of several products in parallel. Returns the number of failed URLs."""
        asset_lists = [assets for assets in asset_lists if assets]
        if not asset_lists:
            return 0
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(asset_lists))) as pool:
            return sum(len(failed) for failed in pool.map(self.reconcile, asset_lists))

    def schedule(self, background_tasks: BackgroundTasks, old_assets: Iterable, new_assets: Iterable = ()) -> None:
        background_tasks.add_task(self.reconcile, list(old_assets or []), list(new_assets or []))

    def pending(self) -> List[Dict[str, Any]]:
        return list(self.collection.find({}, {"_id": 0}).sort("createdAt", 1))

    def retry_pending(self) -> int:
        """Retry recorded failures. Returns how many were cleared."""
        cleared = 0
        for entry in list(self.collection.find({})):
            try:
                self.store.delete(entry["url"])
            except StorageError as exc:
                logger.warning("Retry of image cleanup failed for %s: %s", entry["url"], exc)
                self.collection.update_one(
                    {"_id": entry["_id"]},
                    {"$set": {"lastAttemptAt": utcnow()}, "$inc": {"attempts": 1}},
                )
                continue
            self.collection.delete_one({"_id": entry["_id"]})
            cleared += 1
        if cleared:
            logger.info("Cleared %d pending image cleanups", cleared)
        return cleared
