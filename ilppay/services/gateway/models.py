"""Open Payments resource shapes consumed by the orchestrator.

Wire payloads use camelCase; models accept either spelling and dump snake_case
unless `by_alias=True` is requested.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Amount(WireModel):
    value: str
    asset_code: str
    asset_scale: int


class WalletHandle(WireModel):
    """Resolved wallet address descriptor."""

    id: str
    auth_server: str
    resource_server: str
    asset_code: str
    asset_scale: int
    public_name: str | None = None


class AccessSpec(BaseModel):
    """One requested capability plus whether user interaction is expected."""

    type: str
    actions: list[str] = Field(default_factory=lambda: ["create"])
    limits: dict[str, Any] | None = None
    identifier: str | None = None
    interactive: bool = False

    def access_item(self) -> dict[str, Any]:
        item: dict[str, Any] = {"type": self.type, "actions": list(self.actions)}
        if self.limits is not None:
            item["limits"] = self.limits
        if self.identifier is not None:
            item["identifier"] = self.identifier
        return item


class _GrantToken(BaseModel):
    value: str | None = None
    manage: str | None = None


class _GrantContinuation(BaseModel):
    uri: str | None = None
    access_token: _GrantToken | None = None
    wait: int | None = None


class _GrantInteraction(BaseModel):
    redirect: str | None = None
    finish: str | None = None


class GrantResponse(BaseModel):
    """GNAP grant reply as sent by the authorization server (snake_case on the wire)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    access_token: _GrantToken | None = None
    continuation: _GrantContinuation | None = Field(default=None, alias="continue")
    interact: _GrantInteraction | None = None


class GrantResult(BaseModel):
    """Normalized grant response, either finalized or pending interaction."""

    access_token: str | None = None
    manage_url: str | None = None
    continue_uri: str | None = None
    continue_access_token: str | None = None
    continue_wait: int | None = None
    redirect_url: str | None = None

    @property
    def finalized(self) -> bool:
        return self.access_token is not None

    @classmethod
    def from_wire(cls, reply: GrantResponse) -> "GrantResult":
        token = reply.access_token or _GrantToken()
        cont = reply.continuation or _GrantContinuation()
        return cls(
            access_token=token.value,
            manage_url=token.manage,
            continue_uri=cont.uri,
            continue_access_token=cont.access_token.value if cont.access_token else None,
            continue_wait=cont.wait,
            redirect_url=reply.interact.redirect if reply.interact else None,
        )


class IncomingPaymentHandle(WireModel):
    id: str
    wallet_address: str
    incoming_amount: Amount | None = None
    completed: bool = False


class QuoteHandle(WireModel):
    """Debit/receive agreement. `debit_amount` may exceed the receive side."""

    id: str
    wallet_address: str
    receiver: str
    debit_amount: Amount
    receive_amount: Amount
    method: str = "ilp"
    expires_at: str | None = None


class OutgoingPaymentHandle(WireModel):
    id: str
    wallet_address: str
    quote_id: str | None = None
    debit_amount: Amount | None = None
    receive_amount: Amount | None = None
    sent_amount: Amount | None = None
    failed: bool = False
    created_at: str | None = None
