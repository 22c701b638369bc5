"""Reading gateway responses: instance state, QR code, pairing code, and
failure classification with an operator-facing hint (pt-BR)."""

from typing import Any, Optional

from agenda_bot.services.recipients import details_text, has_exists_false, unwrap_not_found

QR_KEYS = ("base64", "qrcode", "qr", "qrCode", "qr_code")
PAIRING_KEYS = ("pairingCode", "pairing_code")

HINT_ROUTE_NOT_FOUND = (
    "A URL pública não está apontando para a API do gateway (tunnel, porta ou serviço errado). "
    "Abra a URL no navegador e confirme que a página de boas-vindas da API aparece."
)
HINT_UNAUTHORIZED = (
    "O gateway está recusando a API Key (401). Confirme que a chave configurada é exatamente a "
    'mesma do container do gateway e que nenhum proxy está removendo o header "apikey".'
)
HINT_TUNNEL = (
    "O domínio do gateway está retornando a página de erro do Cloudflare Tunnel (1033): o tunnel "
    "ou o serviço de origem está offline. Mantenha o container e o cloudflared rodando com restart automático."
)
HINT_NETWORK = (
    "Falha de rede ao chamar o gateway. Confirme que a URL é pública e responde rápido; se usar "
    "IP:porta, libere a porta no firewall ou exponha via HTTPS/443."
)
HINT_NUMBER_NOT_FOUND = (
    "O gateway indicou que o número não existe no WhatsApp (exists=false). Confirme o telefone "
    "com DDD + 55 (ex.: 5531999999999)."
)
HINT_QUOTE_COMMAND = (
    'O gateway retornou "Quote command returned error" ao enviar. Já foram tentadas variações do '
    "número e do texto; confirme o telefone com DDD + 55 e verifique os logs do gateway."
)
HINT_NO_PAIRING_CODE = (
    "O gateway não retornou código de pareamento para este número. Confirme o suporte a pairing "
    "code ou conecte pelo QR Code."
)
HINT_NO_QR = (
    "A instância ainda não retornou QR Code. Isso costuma acontecer enquanto o gateway inicia ou "
    "quando a versão do WhatsApp Web do container está desatualizada."
)


def _string(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


# === EXTRACTORS ===


def extract_instance_state(payload: Any) -> Optional[str]:
    """``state`` at the root, under ``instance`` or under ``data``."""
    if not isinstance(payload, dict):
        return None
    for node in (payload, payload.get("instance"), payload.get("data")):
        if isinstance(node, dict) and isinstance(node.get("state"), str):
            return node["state"]
    return None


def _normalize_qr(value: str) -> Optional[str]:
    value = value.strip()
    if not value:
        return None
    marker = value.lower().find("base64,")
    if marker >= 0:
        return value[marker + len("base64,") :].strip() or None
    return value


def _qr_from(candidate: Any) -> Optional[str]:
    if isinstance(candidate, str):
        return _normalize_qr(candidate)
    if not isinstance(candidate, dict):
        return None
    for key in QR_KEYS:
        if isinstance(candidate.get(key), str):
            return _normalize_qr(candidate[key])
    return None


def extract_qr_base64(payload: Any) -> Optional[str]:
    """Find a QR code image (data-URL prefix removed) anywhere the gateway puts it."""
    if not isinstance(payload, dict):
        return None
    direct = next((payload[key] for key in ("qrcode", "qr", "qrCode", "qr_code", "base64") if key in payload), None)
    for candidate in (direct, payload.get("qrcode"), payload.get("data"), payload.get("instance")):
        value = _qr_from(candidate)
        if value:
            return value
    for nested in (payload.get("data"), payload.get("instance")):
        if isinstance(nested, dict):
            value = extract_qr_base64(nested)
            if value:
                return value
    return None


def _pairing_from(candidate: Any) -> Optional[str]:
    if not isinstance(candidate, dict):
        return None
    for key in PAIRING_KEYS:
        value = _string(candidate.get(key))
        if value:
            return value
    return None


def extract_pairing_code(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    for candidate in (payload, payload.get("qrcode"), payload.get("data"), payload.get("instance")):
        value = _pairing_from(candidate)
        if value:
            return value
    for nested in (payload.get("data"), payload.get("instance")):
        if isinstance(nested, dict):
            value = extract_pairing_code(nested)
            if value:
                return value
    return None


# === CLASSIFIERS ===


def is_route_not_found(details: Any) -> bool:
    text = details_text(details)
    if not text:
        return False
    return "cannot get" in text or "<html" in text or ("not found" in text and "/instance/" in text)


def is_instance_not_found(details: Any, instance_name: str = "") -> bool:
    text = details_text(details)
    if not text:
        return False
    mentions_instance = any(word in text for word in ("instance", "instancia", "instância"))
    not_found = any(
        phrase in text for phrase in ("not found", "não encontrada", "nao encontrada", "does not exist")
    )
    if not (mentions_instance and not_found):
        return False
    name = (instance_name or "").strip().lower()
    return not name or name in text


def is_unauthorized(details: Any) -> bool:
    unwrapped = unwrap_not_found(details)
    if not isinstance(unwrapped, dict):
        return False
    if unwrapped.get("status") == 401 or unwrapped.get("error") == "unauthorized":
        return True
    return "unauthorized" in details_text(unwrapped)


def is_tunnel_error(details: Any) -> bool:
    text = details_text(details)
    return any(fragment in text for fragment in ("cloudflare tunnel error", "error code: 1033", "argo tunnel error"))


def is_network_failure(details: Any) -> bool:
    unwrapped = unwrap_not_found(details)
    if not isinstance(unwrapped, dict):
        return False
    if unwrapped.get("error") in {"gateway_fetch_failed", "gateway_timeout", "unreachable"}:
        return True
    text = details_text(unwrapped)
    return any(fragment in text for fragment in ("timed out", "timeout", "fetch failed", "connection refused"))


def is_number_not_found(details: Any) -> bool:
    return has_exists_false(unwrap_not_found(details))


def is_quote_command_error(details: Any) -> bool:
    return "quote command returned error" in details_text(details)


HINT_RULES = (
    (is_route_not_found, HINT_ROUTE_NOT_FOUND),
    (is_unauthorized, HINT_UNAUTHORIZED),
    (is_tunnel_error, HINT_TUNNEL),
    (is_network_failure, HINT_NETWORK),
    (is_number_not_found, HINT_NUMBER_NOT_FOUND),
    (is_quote_command_error, HINT_QUOTE_COMMAND),
)


def gateway_hint(details: Any) -> Optional[str]:
    """First matching operator hint for a failed gateway response, if any."""
    for predicate, hint in HINT_RULES:
        if predicate(details):
            return hint
    return None
