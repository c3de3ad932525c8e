"""
Pydantic schemas mirroring the WS/REST contract.
"""

from __future__ import annotations

from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..media import IceCandidate


class SignalingMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AppConfigRequest(SignalingMessage):
    type: Optional[str] = None


class RegisterRequest(SignalingMessage):
    name: str = ""

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: object) -> str:
        return str(value or "").strip()


class CallRequest(SignalingMessage):
    to: str
    from_: Optional[str] = Field(default=None, alias="from")
    sdp_offer: str = Field(alias="sdpOffer")


class IncomingCallResponseRequest(SignalingMessage):
    call_response: Literal["accept", "reject"] = Field(alias="callResponse")
    from_: str = Field(alias="from")
    sdp_offer: Optional[str] = Field(default=None, alias="sdpOffer")


class IceCandidateRequest(SignalingMessage):
    """Accepts both the flat (native) and nested (browser) candidate layouts."""

    candidate: str
    sdp_mid: Optional[str] = Field(default=None, alias="sdpMid")
    sdp_mline_index: Optional[int] = Field(default=None, alias="sdpMLineIndex")

    @model_validator(mode="before")
    @classmethod
    def _flatten(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("candidate"), dict):
            merged = dict(data)
            merged.update(data["candidate"])
            return merged
        return data

    def to_candidate(self) -> IceCandidate:
        return IceCandidate(
            candidate=self.candidate,
            sdp_mid=self.sdp_mid,
            sdp_mline_index=self.sdp_mline_index,
        )


class CheckOnlineStatusRequest(SignalingMessage):
    user: str


class PlayRequest(SignalingMessage):
    user: str
    sdp_offer: str = Field(alias="sdpOffer")


class UserStatusModel(BaseModel):
    name: str
    status: str


class UserListModel(BaseModel):
    users: List[UserStatusModel] = Field(default_factory=list)
