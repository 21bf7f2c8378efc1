"""Gateway to the external Open Payments network.

`PaymentGateway` is the contract the orchestrator depends on; every call is a
discrete, fallible network operation with no retry. `OpenPaymentsGateway` is
the HTTPS implementation: JSON bodies, GNAP access tokens and signed requests.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ilppay.common.errors import GatewayError, GatewayTimeoutError, GrantError, WalletLookupError
from ilppay.common.logging import logger
from ilppay.common.metrics import gateway_request_duration_seconds
from ilppay.services.gateway.models import (
    AccessSpec,
    GrantResponse,
    GrantResult,
    IncomingPaymentHandle,
    OutgoingPaymentHandle,
    QuoteHandle,
    WalletHandle,
)
from ilppay.services.gateway.signing import RequestSigner

ModelT = TypeVar("ModelT", bound=BaseModel)


class PaymentGateway(ABC):
    """Operations the orchestrator needs from the payment network."""

    @abstractmethod
    async def get_wallet_address(self, url: str) -> WalletHandle:
        pass

    @abstractmethod
    async def request_grant(self, auth_server_url: str, access: AccessSpec) -> GrantResult:
        pass

    @abstractmethod
    async def continue_grant(self, continue_uri: str, continue_access_token: str) -> GrantResult:
        pass

    @abstractmethod
    async def create_incoming_payment(
        self,
        resource_server_url: str,
        access_token: str,
        wallet_id: str,
        amount: int,
        asset_code: str,
        asset_scale: int,
    ) -> IncomingPaymentHandle:
        pass

    @abstractmethod
    async def create_quote(
        self,
        resource_server_url: str,
        access_token: str,
        wallet_id: str,
        receiver: str,
        method: str = "ilp",
    ) -> QuoteHandle:
        pass

    @abstractmethod
    async def create_outgoing_payment(
        self,
        resource_server_url: str,
        access_token: str,
        wallet_id: str,
        quote_id: str,
    ) -> OutgoingPaymentHandle:
        pass

    async def close(self) -> None:
        return None


class OpenPaymentsGateway(PaymentGateway):
    """Signed HTTPS client for wallet, grant and resource servers.

    The instance holds only process-wide credentials; per-session tokens are
    passed in on every call so sessions never capture a client.
    """

    def __init__(
        self,
        signer: RequestSigner,
        client_wallet_url: str,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
        service_name: str = "ilppay",
    ) -> None:
        self.signer = signer
        self.client_wallet_url = client_wallet_url
        self.timeout = timeout
        self.service_name = service_name
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def _send(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        payload: dict[str, Any] | None = None,
        access_token: str | None = None,
        signed: bool = True,
        error_cls: type[GatewayError] = GatewayError,
    ) -> dict[str, Any]:
        headers = {"accept": "application/json"}
        body = None
        if payload is not None:
            body = json.dumps(payload).encode("utf-8")
            headers["content-type"] = "application/json"
        if access_token:
            headers["authorization"] = f"GNAP {access_token}"
        if signed:
            headers = self.signer.sign(method, url, headers, body)

        with gateway_request_duration_seconds.labels(service=self.service_name, operation=operation).time():
            try:
                response = await self._client.request(method, url, content=body, headers=headers)
            except httpx.TimeoutException as exc:
                raise GatewayTimeoutError(f"{operation} timed out after {self.timeout}s") from exc
            except httpx.HTTPError as exc:
                raise error_cls(f"{operation} failed: {exc}") from exc

        if response.status_code >= 400:
            logger.warning(
                "gateway_rejected operation=%s status=%s url=%s", operation, response.status_code, url
            )
            raise error_cls(f"{operation} rejected with HTTP {response.status_code}: {response.text[:200]}")
        try:
            data = response.json()
        except ValueError as exc:
            raise error_cls(f"{operation} returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise error_cls(f"{operation} returned an unexpected body")
        return data

    @staticmethod
    def _parse(
        model: type[ModelT],
        data: dict[str, Any],
        operation: str,
        error_cls: type[GatewayError] = GatewayError,
    ) -> ModelT:
        try:
            return model.model_validate(data)
        except PydanticValidationError as exc:
            raise error_cls(f"{operation} returned an invalid {model.__name__}: {exc.error_count()} error(s)") from exc

    async def get_wallet_address(self, url: str) -> WalletHandle:
        data = await self._send(
            "get_wallet_address", "GET", url, signed=False, error_cls=WalletLookupError
        )
        return self._parse(WalletHandle, data, "get_wallet_address", WalletLookupError)

    async def request_grant(self, auth_server_url: str, access: AccessSpec) -> GrantResult:
        """Request a grant; non-interactive grants must be finalized, interactive ones pending."""

        body: dict[str, Any] = {
            "access_token": {"access": [access.access_item()]},
            "client": self.client_wallet_url,
        }
        if access.interactive:
            body["interact"] = {"start": ["redirect"]}
        data = await self._send("request_grant", "POST", auth_server_url, payload=body, error_cls=GrantError)
        grant = GrantResult.from_wire(self._parse(GrantResponse, data, "request_grant", GrantError))

        if access.interactive:
            if grant.finalized:
                raise GrantError(f"{access.type} grant was finalized without user interaction")
            if not (grant.redirect_url and grant.continue_uri and grant.continue_access_token):
                raise GrantError(f"{access.type} grant is missing interaction or continuation data")
        elif not grant.finalized:
            raise GrantError(f"{access.type} grant was not finalized")
        return grant

    async def continue_grant(self, continue_uri: str, continue_access_token: str) -> GrantResult:
        data = await self._send(
            "continue_grant",
            "POST",
            continue_uri,
            payload={},
            access_token=continue_access_token,
            error_cls=GrantError,
        )
        grant = GrantResult.from_wire(self._parse(GrantResponse, data, "continue_grant", GrantError))
        if not grant.finalized:
            raise GrantError("authorization not yet completed by the user")
        return grant

    async def create_incoming_payment(
        self,
        resource_server_url: str,
        access_token: str,
        wallet_id: str,
        amount: int,
        asset_code: str,
        asset_scale: int,
    ) -> IncomingPaymentHandle:
        body = {
            "walletAddress": wallet_id,
            "incomingAmount": {"value": str(amount), "assetCode": asset_code, "assetScale": asset_scale},
        }
        data = await self._send(
            "create_incoming_payment",
            "POST",
            f"{resource_server_url.rstrip('/')}/incoming-payments",
            payload=body,
            access_token=access_token,
        )
        return self._parse(IncomingPaymentHandle, data, "create_incoming_payment")

    async def create_quote(
        self,
        resource_server_url: str,
        access_token: str,
        wallet_id: str,
        receiver: str,
        method: str = "ilp",
    ) -> QuoteHandle:
        body = {"walletAddress": wallet_id, "receiver": receiver, "method": method}
        data = await self._send(
            "create_quote",
            "POST",
            f"{resource_server_url.rstrip('/')}/quotes",
            payload=body,
            access_token=access_token,
        )
        return self._parse(QuoteHandle, data, "create_quote")

    async def create_outgoing_payment(
        self,
        resource_server_url: str,
        access_token: str,
        wallet_id: str,
        quote_id: str,
    ) -> OutgoingPaymentHandle:
        body = {"walletAddress": wallet_id, "quoteId": quote_id}
        data = await self._send(
            "create_outgoing_payment",
            "POST",
            f"{resource_server_url.rstrip('/')}/outgoing-payments",
            payload=body,
            access_token=access_token,
        )
        return self._parse(OutgoingPaymentHandle, data, "create_outgoing_payment")
