import json
import logging
import os
from typing import Any, Optional

from app.settings import AppConfig
from app.storage import BlobStore
from app.utils import snapshot_key

logger = logging.getLogger("storybook-admin")


class SnapshotLoader:
    """
    Loads the denormalized book JSON the pipeline writes at the end of a run.
    The blob store is tried first, then a local output directory.
    """

    def __init__(self, blob_store: Optional[BlobStore] = None, local_dir: str = None):
        self.blob_store = blob_store
        self.local_dir = local_dir or AppConfig.get_value("snapshot_local_dir")

    def local_path(self, safe_title: str) -> str:
        return os.path.join(self.local_dir, f"{safe_title}_chapters_final.json")

    async def load(self, safe_title: str) -> Optional[Any]:
        if self.blob_store is not None:
            key = snapshot_key(safe_title)
            try:
                data = await self.blob_store.read_json(key)
                if data is not None:
                    logger.info(f"Loaded book JSON from blob store: {key}")
                    return data
            except Exception as e:
                logger.warning(f"Failed to load snapshot {key} from blob store: {e}")

        path = self.local_path(safe_title)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            logger.info(f"Loaded book JSON from local: {path}")
            return data
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load local snapshot {path}: {e}")
            return None

    async def invalidate(self, safe_title: str) -> bool:
        """
        Drop every snapshot copy of the book after an edit-save so the entity
        graph is read from then on. Returns False when there was nothing to
        remove.
        """
        removed = False
        if self.blob_store is not None:
            await self.blob_store.delete(snapshot_key(safe_title))
            removed = True

        path = self.local_path(safe_title)
        if os.path.exists(path):
            os.remove(path)
            logger.info(f"Removed local snapshot {path}")
            removed = True

        if removed:
            logger.info(f"Invalidated snapshot for {safe_title}")
        return removed
