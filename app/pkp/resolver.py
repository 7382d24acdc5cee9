"""Key set resolution: an ordered, de-duplicated view of a handle's keys."""

from app.pkp.identity import AuthMethodHandle
from app.pkp.registry import KeyRecord
from app.pkp.registry_client import KeyRegistryClient


class KeySetResolver:
    """Resolves every key ever bound to a handle, oldest first.

    Downstream components (reconciler, lifecycle policies) rely on this
    ordering; the raw registry response is neither ordered nor guaranteed
    free of repeats.
    """

    def __init__(self, client: KeyRegistryClient):
        self._client = client

    async def resolve(self, handle: AuthMethodHandle) -> list[KeyRecord]:
        seen: dict[str, KeyRecord] = {}
        for record in await self._client.resolve_by_handle(handle):
            prior = seen.get(record.key_id)
            # A repeated entry that reports retirement wins
            if prior is None or (record.retired and not prior.retired):
                seen[record.key_id] = record
        return sorted(seen.values(), key=lambda k: (k.mint_sequence, k.key_id))
