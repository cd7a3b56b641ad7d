from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

UsageType = Literal["chapters", "scenes"]
Provider = Literal["stripe", "paddle", "fastspring"]

class SubscriptionLinkReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    provider: Provider
    subscription_id: str = Field(min_length=1, validation_alias=AliasChoices("subscription_id", "subscriptionId"))
    order_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("order_id", "orderId"))
    # When billing_cycle is given the provider is not queried.
    billing_cycle: Optional[str] = Field(default=None, validation_alias=AliasChoices("billing_cycle", "billingCycle"))
    ends_at: Optional[str] = Field(default=None, validation_alias=AliasChoices("ends_at", "endsAt"))

class SubscriptionLinkResp(BaseModel):
    linked: bool
    reason: Optional[str] = None
    subscription: Optional[Dict[str, Any]] = None

class CheckoutStartResp(BaseModel):
    started: bool
    expires_at: str

class CharacterCreateReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    name: str = Field(min_length=1, max_length=120)
    character_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("character_id", "id"))

class CharacterOut(BaseModel):
    character_id: str
    name: str = ""
    created_at: int
    is_active: bool = False
    locked: bool = False

class CharacterAccessResp(BaseModel):
    slots: int
    active_character_id: Optional[str] = None
    accessible: List[CharacterOut] = Field(default_factory=list)
    locked: List[CharacterOut] = Field(default_factory=list)

class GenerationReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    usage_type: UsageType = Field(validation_alias=AliasChoices("usage_type", "type"))
    character_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("character_id", "characterId"))

class BalanceResp(BaseModel):
    credits: int
    low: bool
    recharged_today: int = 0
    last_recharge_date: Optional[str] = None

class StarterKitEligibilityResp(BaseModel):
    eligible: bool
    credits: int
