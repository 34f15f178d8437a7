"""
Tag Binder - attaches the configured classification tags to resources.
"""

import logging
from typing import List, Sequence

from executors.base import TagAPI

logger = logging.getLogger(__name__)


class TagBinder:
    """Bind a fixed set of tags to created resources. Disabled without tags."""

    def __init__(self, tag_api: TagAPI, tag_ids: Sequence[str] = ()):
        self.tag_api = tag_api
        self.tag_ids = list(dict.fromkeys(tag_ids))

    @property
    def enabled(self) -> bool:
        return bool(self.tag_ids)

    async def bind(
        self, resource_type: str, resource_id: str, bound: Sequence[str] = ()
    ) -> List[str]:
        """
        Attach the configured tags not already bound to a resource.

        Returns:
            The tag ids that were attached.
        """
        missing = [t for t in self.tag_ids if t not in set(bound)]
        if not missing:
            return []
        logger.info(f"Binding tags {missing} to {resource_type} {resource_id}")
        await self.tag_api.attach(resource_type, resource_id, missing)
        return missing

    async def unbind(
        self, resource_type: str, resource_id: str, bound: Sequence[str]
    ) -> List[str]:
        """
        Detach the configured tags currently bound to a resource.

        Returns:
            The tag ids that were detached.
        """
        present = [t for t in self.tag_ids if t in set(bound)]
        if not present:
            return []
        logger.info(f"Unbinding tags {present} from {resource_type} {resource_id}")
        await self.tag_api.detach(resource_type, resource_id, present)
        return present
