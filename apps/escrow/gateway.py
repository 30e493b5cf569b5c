import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from decimal import Decimal

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

logger = logging.getLogger(__name__)


# Provider answers that do not prove the disbursement was refused.
INCONCLUSIVE_STATUS_CODES = frozenset({408, 409, 429})
DUPLICATE_ERROR_CODES = frozenset({"DUPLICATE_TRANSACTION_ERROR"})


class DisbursementGatewayError(Exception):
    """Raised when a disbursement could not be confirmed.

    ``rejected`` is true only when the provider answered and refused the
    request, so no disbursement exists under its idempotency key. Timeouts and
    transport errors leave the outcome unknown.
    """

    def __init__(self, message, *, status_code=None, error_code="", rejected=False):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.rejected = rejected


def is_rejection(status_code, error_code=""):
    if status_code is None or not 400 <= status_code < 500:
        return False
    return status_code not in INCONCLUSIVE_STATUS_CODES and error_code not in DUPLICATE_ERROR_CODES


@dataclass(frozen=True)
class DisbursementRequest:
    external_id: str
    amount: Decimal
    bank_code: str
    account_holder_name: str
    account_number: str
    description: str
    email_to: list = field(default_factory=list)


@dataclass(frozen=True)
class Disbursement:
    id: str
    external_id: str
    amount: Decimal
    status: str


class DisbursementGateway:
    """Payout provider contract. Implementations must treat ``external_id`` as the idempotency key."""

    def create_disbursement(self, disbursement_request):
        raise NotImplementedError

    def verify_webhook_signature(self, raw_body, signature):
        raise NotImplementedError


class XenditDisbursementGateway(DisbursementGateway):
    def __init__(self, *, api_base=None, secret_key=None, webhook_token=None, timeout=None, transport=None):
        self.api_base = (api_base or settings.XENDIT_API_BASE).rstrip("/")
        self.secret_key = secret_key if secret_key is not None else settings.XENDIT_SECRET_KEY
        self.webhook_token = webhook_token if webhook_token is not None else settings.XENDIT_WEBHOOK_TOKEN
        self.timeout = timeout if timeout is not None else settings.DISBURSEMENT_TIMEOUT_SECONDS
        self.transport = transport

    def _client(self):
        return httpx.Client(
            base_url=self.api_base,
            auth=(self.secret_key, ""),
            timeout=self.timeout,
            transport=self.transport,
            headers={"Accept": "application/json", "User-Agent": "DesignHubServer/1.0"},
        )

    def create_disbursement(self, disbursement_request):
        body = {
            "external_id": disbursement_request.external_id,
            "amount": float(disbursement_request.amount),
            "bank_code": disbursement_request.bank_code,
            "account_holder_name": disbursement_request.account_holder_name,
            "account_number": disbursement_request.account_number,
            "description": disbursement_request.description,
        }
        if disbursement_request.email_to:
            body["email_to"] = list(disbursement_request.email_to)

        logger.info("Creating disbursement %s for %s", disbursement_request.external_id, disbursement_request.amount)
        try:
            with self._client() as client:
                response = client.post(
                    "/disbursements",
                    json=body,
                    headers={"X-IDEMPOTENCY-KEY": disbursement_request.external_id},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as exc:
            raise DisbursementGatewayError(f"Disbursement provider timed out: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            error_code, message = "", exc.response.text
            try:
                payload = exc.response.json()
                error_code = payload.get("error_code", "")
                message = payload.get("message", message)
            except ValueError:
                pass
            raise DisbursementGatewayError(
                f"Disbursement provider returned {exc.response.status_code}: {message}",
                status_code=exc.response.status_code,
                error_code=error_code,
                rejected=is_rejection(exc.response.status_code, error_code),
            ) from exc
        except httpx.HTTPError as exc:
            raise DisbursementGatewayError(f"Disbursement provider unreachable: {exc}") from exc

        return Disbursement(
            id=str(data.get("id", "")),
            external_id=data.get("external_id", disbursement_request.external_id),
            amount=Decimal(str(data.get("amount", disbursement_request.amount))),
            status=data.get("status", "PENDING"),
        )

    def verify_webhook_signature(self, raw_body, signature):
        if not self.webhook_token or not signature:
            return False
        if isinstance(raw_body, str):
            raw_body = raw_body.encode("utf-8")
        expected = hmac.new(self.webhook_token.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.strip())


def get_disbursement_gateway():
    return import_string(settings.DISBURSEMENT_GATEWAY)()
