"""
Participant record type.

Participants are the records edited concurrently by event staff: contact
details, the call workflow status, lodging and companion information, and
the agency's manager contact.
"""

from __future__ import annotations

from typing import Any

from .types import RecordTypeDef, field

DEFAULT_ROLE_BADGE = "참석자"
ROLE_BADGES = ("좌장", "연자", "참석자", "VIP")

CALL_STATUS_VALUES = ("대기중", "응답(참석)", "응답(불참)", "부재중", "통화완료")
LODGING_STATUS_VALUES = ("미숙박", "1일차", "2일차", "직접입력")


def normalize_role_badge(value: Any) -> Any:
    """Map empty or placeholder role badges to the default badge.

    The role selector used to persist its placeholder ("선택" / "Select");
    those and blank values all mean an ordinary attendee.
    """
    if value is None:
        return DEFAULT_ROLE_BADGE
    if isinstance(value, str):
        stripped = value.strip()
        if stripped in ("", "선택", "Select"):
            return DEFAULT_ROLE_BADGE
        return stripped
    return value


def _strip(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip()
    return value


PARTICIPANT = RecordTypeDef(
    name="Participant",
    description="Event participant edited from the participant drawer and table",
    fields=(
        field("name", "str", required=True, max_length=100, normalizer=_strip),
        field("organization", "str", max_length=200),
        field("position", "str", max_length=100),
        field("phone", "str", max_length=32, normalizer=_strip),
        field("email", "str", max_length=254, normalizer=_strip),
        field("memo", "str", max_length=2000),
        field("team_name", "str", max_length=100),
        field("role_badge", "enum", enum_values=ROLE_BADGES, normalizer=normalize_role_badge),
        field("call_status", "status", enum_values=CALL_STATUS_VALUES),
        field("lodging_status", "status", enum_values=LODGING_STATUS_VALUES),
        field("stay_status", "str", max_length=50),
        field("companion", "str", max_length=200),
        field("companion_memo", "str", max_length=1000),
        field("adult_count", "int", min_value=0, max_value=20),
        field("child_ages", "list_str", max_items=5),
        field("manager_info", "json"),
        field("sfe_agency_code", "str", max_length=32),
        field("sfe_customer_code", "str", max_length=32),
        field("call_completed", "bool"),
    ),
)
