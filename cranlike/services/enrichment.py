import logging
from typing import List

from cranlike.domain import derived
from cranlike.domain.models import ArtifactType, PackageRecord, RegistryConfig
from cranlike.storage.metadata_store import MetadataStore

logger = logging.getLogger(__name__)


class DerivedMetadataComputer:
    """
    Fills in the fields computed from a record and the rest of the store:
    ownership, indexing and score for sources, platform slice for binaries.
    """

    def __init__(self, store: MetadataStore, config: RegistryConfig):
        self.store = store
        self.config = config

    async def apply(self, record: PackageRecord) -> PackageRecord:
        record.owner = derived.get_repo_owner(record.builder.upstream, self.config)
        record.selfowned = derived.is_self_owned(record, self.config)

        if record.type is ArtifactType.SRC:
            record.usedby = await self.count_reverse_dependencies(record.package)
            record.indexed = derived.is_indexed(record, self.config)
            record.universes = derived.compute_universes(record, self.config)
            signals = derived.popularity_signals(record, self.config)
            record.score = derived.score_from_signals(signals)
            logger.debug(f"Score for {record.user}/{record.package}: {record.score:.2f} from {signals}")
        else:
            record.platform_major_version = derived.parse_major_version(record.built)
            record.architecture = derived.parse_architecture((record.built or {}).get("Platform"))
            if record.type is ArtifactType.LINUX:
                record.distro = record.builder.distro
        return record

    async def count_reverse_dependencies(self, package: str) -> int:
        return await self.store.count(
            {"type": ArtifactType.SRC, "indexed": True, "contents.rundeps": package}
        )

    async def deindex_mirror_copies(self, record: PackageRecord) -> List[PackageRecord]:
        """
        Once a publisher's own indexed source lands, the mirror's copy of the
        same package stops being indexed and points at the publisher instead.
        """
        mirror = self.config.mirror_publisher
        if record.type is not ArtifactType.SRC or not record.indexed or record.user == mirror:
            return []

        index_url = f"https://{record.user}.{self.config.universe_domain}/{record.package}"
        copies = await self.store.find(
            {"type": ArtifactType.SRC, "user": mirror, "package": record.package, "indexed": True}
        )
        updated = []
        for mirrored in copies:
            updated.append(await self.store.update(mirrored.id, {"indexed": False, "index_url": index_url}))
            logger.info(f"De-indexed {mirror}/{record.package} in favour of {index_url}")
        return updated
