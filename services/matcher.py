import logging
from typing import Any, Mapping, Optional

logger = logging.getLogger("ecowaste.matcher")


def _name_of(material: Any) -> str:
    if isinstance(material, Mapping):
        name = material.get("name")
    else:
        name = getattr(material, "name", None)
    return str(name or "").strip().lower()


def match_material(request_title: Optional[str], materials: Mapping[str, Any]) -> Optional[str]:
    """
    Find the project material a request title refers to.

    Request titles are free text cut from a donation description, so this
    is a loose containment check in either direction, case-insensitive.
    The first material in iteration order wins; a miss returns None.
    """
    title = str(request_title or "").strip().lower()
    if not title or not materials:
        return None
    for material_id, material in materials.items():
        name = _name_of(material)
        if not name:
            continue
        if name in title or title in name:
            return material_id
    logger.warning("No material matches request title %r", request_title)
    return None
