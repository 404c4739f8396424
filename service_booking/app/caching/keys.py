"""
Cache key builders.

A key is ``<resource>_<selector>_<selector>...``. Selectors are escaped so an
underscore inside one (``"a_b"``) can never be read as a separator, which
keeps distinct selector tuples from mapping onto the same key.
"""

from typing import Any


DEPARTMENTS = "departments"
DEPARTMENTS_WITH_AVAILABILITY = "departments_with_availability"
AVAILABLE_SLOTS = "available_slots"
AVAILABLE_SLOTS_WEEK = "available_slots_week"
APPOINTMENTS_LIST = "appointments_list"
DASHBOARD_STATS = "dashboard_stats"
SYSTEM_SETTINGS = "system_settings"

DEPARTMENTS_ALL = "departments_all"


def escape_selector(selector: Any) -> str:
    """Escape a selector value for use inside a key."""
    return str(selector).replace("%", "%25").replace("_", "%5F")


def build_key(resource: str, *selectors: Any) -> str:
    """Build a deterministic key from a resource name and selectors."""
    return "_".join([resource] + [escape_selector(s) for s in selectors])


def key_prefix(resource: str, *selectors: Any) -> str:
    """Substring matching every key of ``resource`` that starts with ``selectors``."""
    return build_key(resource, *selectors) + "_"


def available_slots_key(department_id: Any, date: str) -> str:
    return build_key(AVAILABLE_SLOTS, department_id, date)


def available_slots_week_key(client_id: Any) -> str:
    return build_key(AVAILABLE_SLOTS_WEEK, client_id)


def departments_with_availability_key(date: str) -> str:
    return build_key(DEPARTMENTS_WITH_AVAILABILITY, date)


def dashboard_stats_key(client_id: Any) -> str:
    return build_key(DASHBOARD_STATS, client_id)


def appointments_list_key(*filters: Any) -> str:
    return build_key(APPOINTMENTS_LIST, *filters)
