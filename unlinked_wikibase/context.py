from dataclasses import dataclass, field
from typing import Optional

ENTITIES_USED_PROP_PREFIX = "unlinkedwikibase_entities_used_"


@dataclass
class RenderContext:
    """State owned by one rendering pass; never share between renders."""

    property_ids: dict[str, Optional[str]] = field(default_factory=dict)
    entities_used: list[str] = field(default_factory=list)
    expensive_calls: int = 0

    def add_entity_used(self, entity_id: str) -> bool:
        if entity_id in self.entities_used:
            return False
        self.entities_used.append(entity_id)
        return True

    def page_properties(self) -> dict[str, str]:
        return {
            f"{ENTITIES_USED_PROP_PREFIX}{index}": entity_id
            for index, entity_id in enumerate(self.entities_used, start=1)
        }
