from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field


class HistoryItem(BaseModel):
    role: str
    content: str


class PipelineTrace(BaseModel):
    final_layer: int = Field(default=0, validation_alias=AliasChoices("final_layer", "finalLayer"))
    final_layer_name: str = Field(default="", validation_alias=AliasChoices("final_layer_name", "finalLayerName"))
    steps: list[dict[str, Any]] = []


class ResolverResult(BaseModel):
    content: str = ""
    trace: PipelineTrace = Field(default_factory=PipelineTrace)
    is_admin_escalation: bool = Field(
        default=False, validation_alias=AliasChoices("is_admin_escalation", "isAdminEscalation")
    )
    is_cancel_escalation: bool = Field(
        default=False, validation_alias=AliasChoices("is_cancel_escalation", "isCancelEscalation")
    )
    carousel_product_ids: Optional[list[int]] = Field(
        default=None, validation_alias=AliasChoices("carousel_product_ids", "carouselProductIds")
    )
