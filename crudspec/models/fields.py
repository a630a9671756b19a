from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

# Keys read from dataclasses.field(metadata=...)
DB_HINT = "db"
ORM_HINT = "orm"
JSON_HINT = "json"
EMBED_HINT = "embed"


@dataclass(frozen=True)
class FieldSpec:
    """One declared model field and its column hints.

    ``db`` is the comma form (``"id,pk"``, ``"total,scanonly"``), ``orm`` the
    semicolon form (``"column:id;primaryKey"``, ``"->"``, ``"type:bigint"``)
    and ``json`` a generic name hint. A field with ``embedded`` set is an
    anonymous member whose own fields are flattened into the parent.
    """

    name: str
    annotation: Any = None
    db: str = ""
    orm: str = ""
    json: str = ""
    embedded: Optional[tuple["FieldSpec", ...]] = None
    optional: bool = False

    @property
    def is_embedded(self) -> bool:
        return self.embedded is not None
