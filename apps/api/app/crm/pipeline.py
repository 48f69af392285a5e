"""Lead status and opportunity stage rules.

Both machines are plain enumerated attributes: any member may be assigned at
any time, including moving a Qualified lead back to New or reopening a Won
deal. Only membership in the fixed set is validated.

The one exception is conversion: once an opportunity references a lead, the
lead stays Qualified until that opportunity is deleted.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from app.core.errors import InvalidStageError, InvalidStatusError


class LeadStatus(StrEnum):
    NEW = "New"
    CONTACTED = "Contacted"
    QUALIFIED = "Qualified"


class OpportunityStage(StrEnum):
    DISCOVERY = "Discovery"
    PROPOSAL = "Proposal"
    WON = "Won"
    LOST = "Lost"


INITIAL_LEAD_STATUS = LeadStatus.NEW
CONVERTED_LEAD_STATUS = LeadStatus.QUALIFIED
INITIAL_OPPORTUNITY_STAGE = OpportunityStage.DISCOVERY

# Business-terminal only; nothing prevents a later update from leaving them.
TERMINAL_STAGES = frozenset({OpportunityStage.WON, OpportunityStage.LOST})


def coerce_lead_status(value: Any) -> LeadStatus:
    if isinstance(value, LeadStatus):
        return value
    try:
        return LeadStatus(value)
    except (TypeError, ValueError):
        allowed = ", ".join(item.value for item in LeadStatus)
        raise InvalidStatusError(f"invalid lead status {value!r}; expected one of: {allowed}") from None


def coerce_opportunity_stage(value: Any) -> OpportunityStage:
    if isinstance(value, OpportunityStage):
        return value
    try:
        return OpportunityStage(value)
    except (TypeError, ValueError):
        allowed = ", ".join(item.value for item in OpportunityStage)
        raise InvalidStageError(f"invalid opportunity stage {value!r}; expected one of: {allowed}") from None


def is_terminal_stage(stage: OpportunityStage | str) -> bool:
    return stage in TERMINAL_STAGES
