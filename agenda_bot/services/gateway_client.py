"""Resilient client for the WhatsApp messaging gateway (Evolution-style API)."""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from urllib.parse import quote

import httpx

from agenda_bot.config import settings
from agenda_bot.logging_config import get_logger, redact_url
from agenda_bot.services.gateway_diagnostics import (
    HINT_NO_PAIRING_CODE,
    HINT_NO_QR,
    extract_instance_state,
    extract_pairing_code,
    extract_qr_base64,
    gateway_hint,
    is_instance_not_found,
)
from agenda_bot.services.gateway_policy import (
    UNREACHABLE_STATUSES,
    AttemptPolicy,
    AuthVariant,
    GatewaySendAttempt,
    build_auth_variants,
    build_base_url_candidates,
    validate_gateway_url,
)
from agenda_bot.services.recipients import (
    build_recipient_candidates,
    build_text_candidates,
    is_recipient_format_error,
    mask_recipient,
    sanitize_phone,
)

logger = get_logger("gateway_client")

CLASS_OK = "ok"
CLASS_UNAUTHORIZED = "unauthorized"
CLASS_NOT_FOUND = "not_found"
CLASS_UNREACHABLE = "unreachable"
CLASS_ERROR = "error"

ABORTING_CLASSIFICATIONS = {CLASS_UNAUTHORIZED, CLASS_NOT_FOUND, CLASS_UNREACHABLE}
ABORTING_STATUSES = {401, 403, 404}

StopOn404 = Callable[[Any], bool]


class GatewayConfigError(Exception):
    """Messaging is not configured, or the configured gateway URL is unusable."""

    def __init__(self, code: str, reason: Optional[str] = None, cleaned: Optional[str] = None):
        self.code = code
        self.reason = reason
        self.cleaned = cleaned
        message = code if not reason else f"{code}: {reason}"
        super().__init__(message)


@dataclass
class GatewayResponse:
    ok: bool
    status: int
    body: Any = None
    classification: str = CLASS_OK
    base_url: Optional[str] = None
    auth_kind: Optional[str] = None
    attempts: list[dict] = field(default_factory=list)

    @property
    def hint(self) -> Optional[str]:
        return None if self.ok else gateway_hint(self.body)

    def to_error_dict(self) -> dict:
        return {
            "error": "gateway_error",
            "classification": self.classification,
            "details": self.body,
            "hint": self.hint,
            "attempts": self.attempts,
        }


@dataclass
class ConnectResult:
    ok: bool
    status: int
    instance: str
    state: Optional[str] = None
    qr_base64: Optional[str] = None
    pairing_code: Optional[str] = None
    hint: Optional[str] = None
    error: Optional[GatewayResponse] = None


def _classify(status: int, ok: bool) -> str:
    if ok:
        return CLASS_OK
    if status == 401:
        return CLASS_UNAUTHORIZED
    if status == 404:
        return CLASS_NOT_FOUND
    if status in UNREACHABLE_STATUSES:
        return CLASS_UNREACHABLE
    return CLASS_ERROR


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class GatewayClient:
    """One logical operation = one ``AttemptPolicy``.

    ``request`` walks base URLs x auth variants under the policy; ``send_text``
    layers recipient and text variants on top and reuses the same policy, so the
    base-URL cap and deadline hold for the whole send.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        *,
        country_code: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
        max_base_urls: Optional[int] = None,
        deadline_seconds: Optional[float] = None,
        request_timeout_seconds: Optional[float] = None,
        max_unreachable: Optional[int] = None,
    ):
        self.base_url = base_url
        self.api_key = api_key
        self.country_code = country_code if country_code is not None else settings.default_country_code
        self.clock = clock
        self.max_base_urls = max_base_urls or settings.gateway_max_base_urls
        self.deadline_seconds = deadline_seconds or settings.gateway_deadline_seconds
        self.request_timeout_seconds = request_timeout_seconds or settings.gateway_request_timeout_seconds
        self.max_unreachable = max_unreachable or settings.gateway_max_unreachable
        self.base_url_candidates = build_base_url_candidates(base_url)
        self.auth_variants = build_auth_variants(api_key)
        self._http = httpx.Client(transport=transport, follow_redirects=False)

    @classmethod
    def from_config(cls, gateway_url: Optional[str], api_key: Optional[str], **kwargs) -> "GatewayClient":
        """Build a client, raising GatewayConfigError for missing or private gateways."""
        if not gateway_url or not api_key:
            raise GatewayConfigError("gateway_not_configured")
        validation = validate_gateway_url(gateway_url)
        if not validation.ok:
            raise GatewayConfigError("invalid_gateway_url", validation.reason, validation.cleaned)
        return cls(validation.cleaned, api_key, **kwargs)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "GatewayClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def new_policy(self) -> AttemptPolicy:
        return AttemptPolicy(
            max_base_urls=self.max_base_urls,
            deadline_seconds=self.deadline_seconds,
            request_timeout_seconds=self.request_timeout_seconds,
            max_unreachable=self.max_unreachable,
            clock=self.clock,
        )

    # === LOW LEVEL ===

    def _fetch_once(
        self,
        method: str,
        url: str,
        auth: AuthVariant,
        body: Any,
        timeout: float,
    ) -> tuple[int, Any]:
        try:
            response = self._http.request(
                method,
                url,
                headers=auth.headers,
                params=auth.params or None,
                json=body,
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            return 504, {"error": "gateway_timeout", "message": str(e), "url": redact_url(url)}
        except httpx.HTTPError as e:
            return 502, {"error": "gateway_fetch_failed", "message": str(e), "url": redact_url(url)}
        return response.status_code, _parse_body(response)

    def _try_auth_variants(
        self,
        method: str,
        base_url: str,
        path: str,
        body: Any,
        policy: AttemptPolicy,
        recipient: Optional[str],
        text_variant: Optional[str],
    ) -> Optional[tuple[int, Any, str]]:
        url = f"{base_url}{path if path.startswith('/') else '/' + path}"
        last: Optional[tuple[int, Any, str]] = None
        for auth in policy.order_auth_variants(self.auth_variants):
            if policy.expired:
                break
            status, payload = self._fetch_once(method, url, auth, body, policy.request_timeout())
            policy.record(
                GatewaySendAttempt(
                    base_url=base_url,
                    auth_kind=auth.kind,
                    status=status,
                    recipient=recipient,
                    text_variant=text_variant,
                )
            )
            last = (status, payload, auth.kind)
            if status != 401:
                return last
        return last

    def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        stop_on_404: Optional[StopOn404] = None,
        policy: Optional[AttemptPolicy] = None,
        recipient: Optional[str] = None,
        text_variant: Optional[str] = None,
    ) -> GatewayResponse:
        """Run one request through the candidate matrix.

        401 moves to the next auth variant; a base URL where every variant got
        401 moves to the next base URL. 404 moves to the next base URL unless
        ``stop_on_404(body)`` says the resource is really absent. 502/504 count
        toward the policy's unreachable short-circuit.
        """
        policy = policy or self.new_policy()
        last: Optional[GatewayResponse] = None

        for base_url in policy.order_base_urls(self.base_url_candidates):
            if policy.unreachable or not policy.admit_base_url(base_url):
                continue
            outcome = self._try_auth_variants(method, base_url, path, body, policy, recipient, text_variant)
            if outcome is None:
                break
            status, payload, auth_kind = outcome
            ok = 200 <= status < 300
            last = GatewayResponse(
                ok=ok,
                status=status,
                body=payload,
                classification=_classify(status, ok),
                base_url=base_url,
                auth_kind=auth_kind,
            )

            if status == 401:
                continue
            if status == 404:
                if stop_on_404 is not None and stop_on_404(payload):
                    break
                continue
            if status in UNREACHABLE_STATUSES:
                if policy.unreachable:
                    break
                continue
            policy.prefer(base_url, auth_kind)
            break

        return self._finalize(last, policy)

    def _finalize(self, last: Optional[GatewayResponse], policy: AttemptPolicy) -> GatewayResponse:
        attempts = policy.attempts_as_dicts()
        if last is None:
            # Nothing was sent: the shared budget ran out or the gateway was already unreachable.
            if policy.expired or policy.unreachable:
                return GatewayResponse(
                    ok=False,
                    status=504,
                    body={"error": "gateway_timeout" if policy.expired else "unreachable", "attempts": attempts},
                    classification=CLASS_UNREACHABLE,
                    attempts=attempts,
                )
            return GatewayResponse(
                ok=False,
                status=404,
                body={"error": "not_found", "attempts": attempts},
                classification=CLASS_NOT_FOUND,
                attempts=attempts,
            )

        last.attempts = attempts
        if last.ok:
            return last
        if last.status == 401:
            last.body = {"error": "unauthorized", "status": 401, "response": last.body}
        elif last.status in UNREACHABLE_STATUSES:
            last.body = {"error": "unreachable", "last": last.body}
        elif last.status == 404:
            last.body = {"error": "not_found", "last": last.body}
        return last

    # === OPERATIONS ===

    def _instance_not_found(self, instance: str) -> StopOn404:
        return lambda body: is_instance_not_found(body, instance)

    def send_text(self, instance: str, phone: str, text: str, *, provision: bool = True) -> GatewayResponse:
        """Send ``text`` to ``phone``, trying recipient and text encodings.

        Only a recipient-format rejection moves on to the next encoding; auth,
        not-found and unreachable failures end the send immediately.
        """
        recipients = build_recipient_candidates(phone, self.country_code)
        texts = build_text_candidates(text)
        if not recipients or not texts:
            return GatewayResponse(
                ok=False, status=400, body={"error": "invalid_payload"}, classification=CLASS_ERROR
            )

        policy = self.new_policy()
        result = self._send_variants(instance, recipients, texts, policy)
        if (
            provision
            and not result.ok
            and result.status == 404
            and is_instance_not_found(result.body, instance)
        ):
            logger.info("Gateway instance missing, creating", extra={"context": {"instance": instance}})
            created = self.create_instance(instance, policy=policy)
            if not created.ok and created.status != 409:
                return created
            result = self._send_variants(instance, recipients, texts, policy)

        log = logger.info if result.ok else logger.warning
        log(
            "Gateway send finished",
            extra={
                "context": {
                    "instance": instance,
                    "recipient": mask_recipient(phone),
                    "status": result.status,
                    "classification": result.classification,
                    "attempts": len(result.attempts),
                }
            },
        )
        return result

    def _send_variants(
        self, instance: str, recipients: list[str], texts: list[tuple[str, str]], policy: AttemptPolicy
    ) -> GatewayResponse:
        path = f"/message/sendText/{quote(instance, safe='')}"
        stop_on_404 = self._instance_not_found(instance)
        last: Optional[GatewayResponse] = None

        for recipient in recipients:
            for variant, value in texts:
                last = self.request(
                    "POST",
                    path,
                    {"number": recipient, "text": value},
                    stop_on_404=stop_on_404,
                    policy=policy,
                    recipient=mask_recipient(recipient),
                    text_variant=variant,
                )
                if last.ok:
                    return last
                if last.classification in ABORTING_CLASSIFICATIONS or last.status in ABORTING_STATUSES:
                    return last
                if not is_recipient_format_error(last.body):
                    return last
                if policy.expired:
                    return last
        return last

    def create_instance(
        self,
        instance: str,
        *,
        qrcode: bool = True,
        number: Optional[str] = None,
        policy: Optional[AttemptPolicy] = None,
    ) -> GatewayResponse:
        policy = policy or self.new_policy()
        number = sanitize_phone(number) if number else ""
        body = {"instanceName": instance, "token": self.api_key, "qrcode": qrcode, "integration": "WHATSAPP-BAILEYS"}
        if number:
            body["number"] = number
        result = self.request("POST", "/instance/create", body, policy=policy)
        if result.ok or result.status == 409:
            return result
        # Some gateway versions reject a caller-chosen instance token.
        body.pop("token")
        return self.request("POST", "/instance/create", body, policy=policy)

    def connection_state(self, instance: str, *, provision: bool = True, number: Optional[str] = None) -> GatewayResponse:
        """Fetch the instance connection state, creating the instance once if it is missing."""
        policy = self.new_policy()
        path = f"/instance/connectionState/{quote(instance, safe='')}"
        stop_on_404 = self._instance_not_found(instance)
        result = self.request("GET", path, stop_on_404=stop_on_404, policy=policy)
        if provision and not result.ok and result.status == 404 and stop_on_404(result.body):
            created = self.create_instance(instance, qrcode=not number, number=number, policy=policy)
            if not created.ok and created.status != 409:
                return created
            result = self.request("GET", path, stop_on_404=stop_on_404, policy=policy)
        return result

    def _connect_candidates(self, instance: str, number: str) -> list[tuple[str, str, Optional[dict]]]:
        name = quote(instance, safe="")
        plain = [
            ("GET", f"/instance/connect/{name}", None),
            ("POST", f"/instance/connect/{name}", None),
            ("GET", f"/instance/connect?instance={name}", None),
            ("GET", f"/instance/connect?instanceName={name}", None),
            ("POST", "/instance/connect", {"instanceName": instance}),
            ("POST", "/instance/connect", {"instance": instance}),
        ]
        if not number:
            return plain
        with_number = [
            ("GET", f"/instance/connect/{name}?number={number}", None),
            ("POST", f"/instance/connect/{name}", {"number": number}),
            ("GET", f"/instance/connect?instance={name}&number={number}", None),
            ("GET", f"/instance/connect?instanceName={name}&number={number}", None),
            ("POST", "/instance/connect", {"instanceName": instance, "number": number}),
            ("POST", "/instance/connect", {"instance": instance, "number": number}),
        ]
        return with_number + plain

    def connect(self, instance: str, number: Optional[str] = None) -> ConnectResult:
        """Start a session: returns a QR code, or a pairing code when ``number`` is given."""
        policy = self.new_policy()
        pairing_number = sanitize_phone(number) if number else ""
        stop_on_404 = self._instance_not_found(instance)
        state_path = f"/instance/connectionState/{quote(instance, safe='')}"

        state_res = self.request("GET", state_path, stop_on_404=stop_on_404, policy=policy)
        state = extract_instance_state(state_res.body) if state_res.ok else None
        if state == "open":
            return ConnectResult(ok=True, status=200, instance=instance, state=state)

        qr_base64: Optional[str] = None
        pairing_code: Optional[str] = None
        if not state_res.ok and state_res.status == 404:
            if not stop_on_404(state_res.body):
                return ConnectResult(ok=False, status=404, instance=instance, error=state_res)
            created = self.create_instance(
                instance, qrcode=not pairing_number, number=pairing_number or None, policy=policy
            )
            if not created.ok and created.status != 409:
                return ConnectResult(ok=False, status=created.status, instance=instance, error=created)
            if created.ok:
                qr_base64 = extract_qr_base64(created.body)
                pairing_code = extract_pairing_code(created.body)

        connect_state: Optional[str] = None
        if not (pairing_code if pairing_number else (qr_base64 or pairing_code)):
            for method, path, body in self._connect_candidates(instance, pairing_number):
                res = self.request(method, path, body, policy=policy)
                if not res.ok:
                    if res.status == 404:
                        continue
                    return ConnectResult(ok=False, status=res.status, instance=instance, error=res)
                connect_state = extract_instance_state(res.body) or connect_state
                qr_base64 = extract_qr_base64(res.body) or qr_base64
                pairing_code = extract_pairing_code(res.body) or pairing_code
                if pairing_code or (qr_base64 and not pairing_number):
                    break

        if not qr_base64 and not pairing_number:
            for qr_path in ("/instance/qrcode/{}", "/instance/qrCode/{}", "/instance/qr/{}"):
                res = self.request("GET", qr_path.format(quote(instance, safe="")), policy=policy)
                if not res.ok:
                    if res.status == 404:
                        continue
                    return ConnectResult(ok=False, status=res.status, instance=instance, error=res)
                connect_state = extract_instance_state(res.body) or connect_state
                qr_base64 = extract_qr_base64(res.body) or qr_base64
                pairing_code = extract_pairing_code(res.body) or pairing_code
                if qr_base64:
                    break

        if not connect_state:
            after = self.request("GET", state_path, stop_on_404=stop_on_404, policy=policy)
            if after.ok:
                connect_state = extract_instance_state(after.body)

        final_state = connect_state or state
        hint = None
        if pairing_number and not pairing_code:
            hint = HINT_NO_PAIRING_CODE
        elif not qr_base64 and not pairing_code and final_state in {"connecting", "close", "closed"}:
            hint = HINT_NO_QR

        return ConnectResult(
            ok=True,
            status=200,
            instance=instance,
            state=final_state,
            qr_base64=None if pairing_number else qr_base64,
            pairing_code=pairing_code,
            hint=hint,
        )

    def disconnect(self, instance: str) -> GatewayResponse:
        """Log the instance out and delete it; an already-missing instance counts as success."""
        policy = self.new_policy()
        name = quote(instance, safe="")
        stop_on_404 = self._instance_not_found(instance)

        logout = self.request("DELETE", f"/instance/logout/{name}", stop_on_404=stop_on_404, policy=policy)
        if not logout.ok and logout.status == 405:
            logout = self.request("GET", f"/instance/logout/{name}", stop_on_404=stop_on_404, policy=policy)
        if not logout.ok and logout.status != 404:
            return logout

        deleted = self.request("DELETE", f"/instance/delete/{name}", stop_on_404=stop_on_404, policy=policy)
        if not deleted.ok and deleted.status != 404:
            return deleted
        return GatewayResponse(ok=True, status=200, body={"instance": instance}, attempts=deleted.attempts)
