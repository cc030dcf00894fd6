from __future__ import annotations

from decimal import Decimal
from typing import Annotated

from pydantic import BaseModel, ConfigDict, PlainSerializer
from pydantic.alias_generators import to_camel


Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class ApiModel(BaseModel):
    """Wire models: camelCase on the wire, snake_case in Python, ORM-readable."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class BulkItemResult(ApiModel):
    lead_id: str | None = None
    client_id: str | None = None
    success: bool
    error: str | None = None
    lead_name: str | None = None


class BulkSummary(ApiModel):
    total: int
    successful: int
    failed: int
    successful_leads: list[str]
    failed_leads: list[str]


def summarize(results: list[BulkItemResult]) -> BulkSummary:
    succeeded = [item for item in results if item.success]
    failed = [item for item in results if not item.success]
    return BulkSummary(
        total=len(results),
        successful=len(succeeded),
        failed=len(failed),
        successful_leads=[item.lead_id or item.client_id or "" for item in succeeded],
        failed_leads=[item.lead_id or item.client_id or "" for item in failed],
    )
