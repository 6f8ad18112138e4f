"""Index bootstrap - create the target index from a template when it is missing."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

import orjson

from marketindexer.indexer.client import IndexStoreError

if TYPE_CHECKING:
    from marketindexer.indexer.client import IndexStoreClient

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_PATH = "elastic-template.json"


class IndexBootstrapError(Exception):
    """Raised when the target index cannot be checked or created."""


def load_template(template_path: str | Path) -> bytes:
    """
    Read and validate an index template file.

    Raises:
        IndexBootstrapError: If the file is missing or not a JSON object.
    """
    path = Path(template_path)
    try:
        body = path.read_bytes()
    except OSError as e:
        raise IndexBootstrapError(f"Unable to read index template {path}: {e}") from e

    try:
        parsed = orjson.loads(body)
    except orjson.JSONDecodeError as e:
        raise IndexBootstrapError(f"Index template {path} is not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise IndexBootstrapError(f"Index template {path} must be a JSON object")
    return body


async def ensure_index(
    client: IndexStoreClient,
    index_name: str,
    template_path: str | Path = DEFAULT_TEMPLATE_PATH,
) -> bool:
    """
    Create `index_name` from the template if it does not exist yet.

    Args:
        client: Started index store client.
        index_name: Index to check/create.
        template_path: JSON index definition (settings + mappings).

    Returns:
        True if the index was created, False if it already existed.

    Raises:
        IndexBootstrapError: On any failure.
    """
    logger.info("Initializing index %s", index_name)
    try:
        exists = await client.index_exists(index_name)
    except IndexStoreError as e:
        raise IndexBootstrapError(f"Unable to check index {index_name}: {e}") from e

    if exists:
        logger.info("Index %s exists, nothing to do", index_name)
        return False

    body = load_template(template_path)
    try:
        await client.create_index(index_name, body)
    except IndexStoreError as e:
        raise IndexBootstrapError(
            f"Unable to create index. Error PUTing index definition for {index_name}: {e}"
        ) from e

    logger.info("Created index %s", index_name)
    return True
