import os
import uuid
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from aquabill.errors import ExternalError

logger = logging.getLogger(__name__)


class FileStorage(ABC):
    """Collaborator that keeps uploaded payment proofs.

    ``save`` returns an opaque reference stored on the payment record.
    """

    @abstractmethod
    def save(self, content: bytes, content_type: str, filename: str) -> str:
        pass

    @abstractmethod
    def delete(self, reference: str) -> None:
        pass


class LocalFileStorage(FileStorage):
    def __init__(self, upload_dir: str):
        self.upload_dir = Path(upload_dir)

    def save(self, content: bytes, content_type: str, filename: str) -> str:
        safe_name = os.path.basename(filename or "proof") or "proof"
        stored_name = f"{uuid.uuid4()}_{safe_name}"
        try:
            self.upload_dir.mkdir(parents=True, exist_ok=True)
            with open(self.upload_dir / stored_name, "wb") as f:
                f.write(content)
        except OSError as e:
            logger.error(f"Error storing payment proof {safe_name}: {e}")
            raise ExternalError(f"Could not store payment proof: {e}", kind="storage_failed")

        logger.info(f"Stored payment proof {stored_name} ({len(content)} bytes, {content_type})")
        return stored_name

    def delete(self, reference: str) -> None:
        path = self.upload_dir / os.path.basename(reference)
        try:
            if path.exists():
                path.unlink()
                logger.info(f"Removed payment proof {reference}")
        except OSError as e:
            logger.error(f"Error removing payment proof {reference}: {e}")
            raise ExternalError(f"Could not remove payment proof: {e}", kind="storage_failed")
