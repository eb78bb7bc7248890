from dataclasses import dataclass
from pathlib import Path
import os

from fastapi import Request

from cranlike.domain.models import RegistryConfig
from cranlike.services.ingestion import IngestionCoordinator
from cranlike.storage.blob_store import BlobStore, FileBlobStore
from cranlike.storage.json_metadata_store import JsonMetadataStore
from cranlike.storage.metadata_store import MetadataStore

DATA_ROOT_ENV_VAR = "CRANLIKE_DATA_DIR"
_REPO_ROOT = Path(__file__).resolve().parents[2]
_DEFAULT_DATA_DIR = _REPO_ROOT / "data"


@dataclass
class Services:
    """Everything a request handler may need, built once per application."""

    store: MetadataStore
    blobs: BlobStore
    config: RegistryConfig
    coordinator: IngestionCoordinator


def get_data_dir() -> Path:
    env_path = os.environ.get(DATA_ROOT_ENV_VAR)
    if env_path:
        d = Path(env_path).expanduser()
    else:
        d = _DEFAULT_DATA_DIR
    d.mkdir(parents=True, exist_ok=True)
    return d


async def build_services(data_dir: Path) -> Services:
    store = JsonMetadataStore(data_dir)
    await store.initialize()
    config = store.get_registry_config()
    blobs = FileBlobStore(data_dir / "blobs", chunk_size=config.upload_chunk_size)
    return Services(
        store=store,
        blobs=blobs,
        config=config,
        coordinator=IngestionCoordinator(store, blobs, config),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_coordinator(request: Request) -> IngestionCoordinator:
    return get_services(request).coordinator
