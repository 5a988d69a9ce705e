"""
Node preview image bookkeeping.

Images live next to the spec store and follow the store's key layout:

    images/<file key>/<node id>.png       current render
    images/<file key>/<node id>.prev.png  render from the previous run

Downloading renders from the Figma API is the caller's job. This module
places downloaded files, keeps the previous render for before/after
comparison and removes images of nodes that are no longer tracked.
"""

import shutil
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, List, Iterable, Tuple, Union
from urllib.parse import quote

from .errors import StorageError
from .storage import storage_key

logger = logging.getLogger(__name__)

IMAGES_DIR_NAME = "images"
IMAGE_SUFFIX = ".png"
PREVIOUS_SUFFIX = ".prev.png"


@dataclass
class ExportedImage:
    """A node render present on disk."""
    file_key: str
    node_id: str
    image_path: Path
    previous_image_path: Optional[Path] = None


@dataclass
class ImageExportResult:
    """Images available for a run, plus per-node export failures."""
    images: List[ExportedImage] = field(default_factory=list)
    errors: List[Tuple[str, str, str]] = field(default_factory=list)

    def find(self, file_key: str, node_id: str) -> Optional[ExportedImage]:
        for image in self.images:
            if image.file_key == file_key and image.node_id == node_id:
                return image
        return None


def get_image_path(images_dir: Union[str, Path], file_key: str, node_id: str) -> Path:
    """Absolute location of a node's current render."""
    return Path(images_dir) / f"{storage_key(file_key, node_id)}{IMAGE_SUFFIX}"


def get_previous_image_path(images_dir: Union[str, Path], file_key: str, node_id: str) -> Path:
    """Absolute location of a node's previous render."""
    return Path(images_dir) / f"{storage_key(file_key, node_id)}{PREVIOUS_SUFFIX}"


def get_relative_image_path(file_key: str, node_id: str) -> str:
    """
    Link to the current render, relative to the spec store root.

    Used for markdown embedding. File names already contain percent
    escapes, so the path is quoted again: a renderer that URL-decodes the
    link lands on the file as it is named on disk.
    """
    return quote(f"{IMAGES_DIR_NAME}/{storage_key(file_key, node_id)}{IMAGE_SUFFIX}", safe="/")


def get_relative_previous_image_path(file_key: str, node_id: str) -> str:
    return quote(f"{IMAGES_DIR_NAME}/{storage_key(file_key, node_id)}{PREVIOUS_SUFFIX}", safe="/")


def preserve_previous_image(images_dir: Union[str, Path], file_key: str, node_id: str) -> Optional[Path]:
    """
    Copy the current render to the ``.prev.png`` slot before it is replaced.

    Returns:
        Path to the preserved image, or None if there was no current render.
    """
    current_path = get_image_path(images_dir, file_key, node_id)
    if not current_path.exists():
        return None

    previous_path = get_previous_image_path(images_dir, file_key, node_id)
    try:
        shutil.copy2(str(current_path), str(previous_path))
    except OSError as e:
        raise StorageError(
            f"Failed to preserve previous image for {file_key}/{node_id}: {e}",
            path=str(previous_path),
            cause=e,
        )
    logger.info(f"Preserved previous image at {previous_path}")
    return previous_path


def save_image(
    source_path: Union[str, Path],
    images_dir: Union[str, Path],
    file_key: str,
    node_id: str,
    keep_source: bool = False
) -> ExportedImage:
    """
    Place a downloaded render into the image store.

    The existing render, if any, is first preserved as the previous image.

    Args:
        source_path: The downloaded PNG.
        images_dir: Image store root (``<specs_dir>/images``).
        file_key: Figma file key of the node.
        node_id: Figma node id.
        keep_source: Whether to keep the source file (copy vs move).

    Returns:
        The ExportedImage describing the stored files.

    Raises:
        StorageError: If the file cannot be copied or moved.
    """
    target_path = get_image_path(images_dir, file_key, node_id)
    previous_path = preserve_previous_image(images_dir, file_key, node_id)

    try:
        target_path.parent.mkdir(parents=True, exist_ok=True)
        if keep_source:
            shutil.copy2(str(source_path), str(target_path))
            logger.info(f"Copied image to {target_path}")
        else:
            shutil.move(str(source_path), str(target_path))
            logger.info(f"Moved image to {target_path}")
    except OSError as e:
        raise StorageError(f"Failed to save image for {file_key}/{node_id}: {e}", path=str(target_path), cause=e)

    return ExportedImage(
        file_key=file_key,
        node_id=node_id,
        image_path=target_path,
        previous_image_path=previous_path,
    )


def collect_exported_images(
    images_dir: Union[str, Path],
    keys: Iterable[Tuple[str, str]]
) -> ImageExportResult:
    """
    Build an ImageExportResult from renders already on disk.

    Args:
        images_dir: Image store root.
        keys: (file key, node id) pairs to look up.
    """
    result = ImageExportResult()
    for file_key, node_id in keys:
        image_path = get_image_path(images_dir, file_key, node_id)
        if not image_path.exists():
            continue
        previous_path = get_previous_image_path(images_dir, file_key, node_id)
        result.images.append(ExportedImage(
            file_key=file_key,
            node_id=node_id,
            image_path=image_path,
            previous_image_path=previous_path if previous_path.exists() else None,
        ))
    return result


def cleanup_removed_images(images_dir: Union[str, Path], keys: Iterable[Tuple[str, str]]) -> int:
    """
    Delete current and previous renders of removed nodes.

    Returns:
        Number of files deleted.
    """
    removed = 0
    for file_key, node_id in keys:
        for path in (
            get_image_path(images_dir, file_key, node_id),
            get_previous_image_path(images_dir, file_key, node_id),
        ):
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Failed to remove image {path}: {e}")
                continue
            removed += 1
    if removed:
        logger.info(f"Removed {removed} image(s) of untracked nodes")
    return removed
