"""Booking dialogue: one inbound text in, one reply and next state out.

The engine is storage- and transport-free. The webhook router loads the
stored conversation, calls ``DialogueEngine.handle`` and persists
``DialogueOutcome.dialogue`` before sending ``DialogueOutcome.reply``.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Optional

from agenda_bot.logging_config import get_logger
from agenda_bot.services.booking_service import (
    FAILURE_CAPACITY_EXHAUSTED,
    FAILURE_DATE_IN_PAST,
    FAILURE_DATE_TOO_FAR,
    FAILURE_LEAD_TIME,
    FAILURE_MONTHLY_LIMIT,
    FAILURE_SLOT_TAKEN,
    BookingBackend,
    BookingBackendError,
    BookingRequest,
    SlotAvailability,
    SlotQuery,
)
from agenda_bot.services.conversation_service import STALE_WINDOW, is_stale
from agenda_bot.services.parsers import (
    group_times,
    is_affirmative,
    is_booking_trigger,
    is_negative,
    is_price_request,
    is_times_request,
    normalize_for_matching,
    parse_date,
    parse_quantity,
    parse_time,
    resolve_timezone,
    today_in_timezone,
)
from agenda_bot.services.state_machine import (
    AwaitConfirm,
    AwaitDate,
    AwaitName,
    AwaitQuantity,
    AwaitService,
    AwaitTime,
    BookingState,
    Dialogue,
    Idle,
    ServiceChoice,
    dump_dialogue,
    load_dialogue,
    transition,
)
from agenda_bot.services.tenant_service import ServiceOption, TenantConfig

logger = get_logger("dialogue_service")

SKIP_BOT_DISABLED = "bot_disabled"
SKIP_DUPLICATE = "duplicate_message"

TEMPLATE_WELCOME = "bot_welcome"
TEMPLATE_SUCCESS = "bot_success"
TEMPLATE_CANCELLED = "bot_cancelled"

DEFAULT_TEMPLATES = {
    TEMPLATE_WELCOME: "Olá! Vamos agendar no {nome_negocio}. Qual serviço você deseja?",
    TEMPLATE_SUCCESS: (
        "Agendamento confirmado! ✅\n"
        "📅 {data} às {hora}\n"
        "✂️ {servico}\n\n"
        "Nos vemos em breve!\n{nome_negocio}"
    ),
    TEMPLATE_CANCELLED: "Tudo bem, cancelei o agendamento em andamento. Quando quiser, é só mandar *Agendar*.",
}

MSG_NO_SERVICES = "No momento não há serviços disponíveis para agendamento pelo WhatsApp."
MSG_SERVICE_NOT_UNDERSTOOD = "Não encontrei esse serviço. Responda com o nome ou o número de uma das opções:"
MSG_SERVICE_CATALOG = "Estes são nossos serviços:"
MSG_ASK_QUANTITY = "Para quantas pessoas? (máximo {capacity})"
MSG_INVALID_QUANTITY = "Informe um número entre 1 e {capacity}."
MSG_ASK_DATE = "Para qual dia? Você pode responder, por exemplo, *25/12*, *amanhã* ou *sexta*."
MSG_INVALID_DATE = "Não entendi a data (ou ela já passou). Tente algo como *25/12* ou *sexta-feira*."
MSG_NO_SLOTS = "Não há horários disponíveis em {data}. Escolha outra data."
MSG_AVAILABILITY_ERROR = "Não consegui consultar a disponibilidade agora. Tente outra data."
MSG_ASK_TIME = "Horários disponíveis em {data}:\n{horarios}\n\nQual horário você prefere?"
MSG_INVALID_TIME = "Esse horário não está disponível. Escolha um destes:\n{horarios}"
MSG_ASK_NAME = "Qual é o seu nome?"
MSG_INVALID_NAME = "Por favor, informe seu nome para o agendamento."
MSG_CONFIRM_PROMPT = "Responda *Confirmar* para concluir ou *Cancelar* para desistir."
MSG_PICK_ANOTHER_DAY = "Escolha outro dia para o agendamento."

BOOKING_FAILURE_MESSAGES = {
    FAILURE_DATE_IN_PAST: "Essa data já passou.",
    FAILURE_DATE_TOO_FAR: "Essa data está longe demais; escolha uma data dentro de 1 ano.",
    FAILURE_LEAD_TIME: "Esse horário não respeita a antecedência mínima exigida.",
    FAILURE_CAPACITY_EXHAUSTED: "Esse horário não tem mais vagas suficientes.",
    FAILURE_SLOT_TAKEN: "Esse horário acabou de ser ocupado.",
    FAILURE_MONTHLY_LIMIT: "O estabelecimento atingiu o limite de agendamentos do mês.",
}
MSG_BOOKING_FAILED = "Não consegui concluir o agendamento."

_PLACEHOLDER_RE = re.compile(r"\{([a-zA-Z0-9_]+)\}")
_NAME_PREFIX_RE = re.compile(r"^(?:meu nome [eé]|me chamo|eu sou|sou)\s+", re.IGNORECASE)


def interpolate(template: str, variables: dict[str, Any]) -> str:
    """Replace ``{name}`` placeholders; unknown placeholders are left as they are."""

    def replace(match: re.Match) -> str:
        key = match.group(1)
        if key in variables and variables[key] is not None:
            return str(variables[key])
        return match.group(0)

    return _PLACEHOLDER_RE.sub(replace, template)


def format_brl(value: Optional[Decimal]) -> str:
    if value is None:
        return ""
    formatted = f"{Decimal(value):,.2f}"
    return "R$ " + formatted.replace(",", "_").replace(".", ",").replace("_", ".")


def format_date(value: date) -> str:
    return value.strftime("%d/%m/%Y")


@dataclass(frozen=True)
class DialogueContext:
    tenant: TenantConfig
    customer_phone: str
    services: list[ServiceOption] = field(default_factory=list)


@dataclass(frozen=True)
class DialogueOutcome:
    reply: Optional[str]
    dialogue: Optional[Dialogue]
    persist: bool = True
    skipped_reason: Optional[str] = None

    @property
    def state(self) -> Optional[BookingState]:
        return self.dialogue.state if self.dialogue is not None else None

    def dump(self) -> tuple[str, dict]:
        return dump_dialogue(self.dialogue)


@dataclass(frozen=True)
class Step:
    dialogue: Dialogue
    reply: Optional[str]


class DialogueEngine:
    def __init__(
        self,
        backend: BookingBackend,
        *,
        origin_tag: str = "whatsapp_bot",
        default_timezone: str = "America/Sao_Paulo",
        stale_window: timedelta = STALE_WINDOW,
    ):
        self.backend = backend
        self.origin_tag = origin_tag
        self.default_timezone = default_timezone
        self.stale_window = stale_window
        self._handlers: dict[BookingState, Callable[[DialogueContext, Any, str, datetime], Step]] = {
            BookingState.IDLE: self._on_idle,
            BookingState.AWAIT_SERVICE: self._on_await_service,
            BookingState.AWAIT_QUANTITY: self._on_await_quantity,
            BookingState.AWAIT_DATE: self._on_await_date,
            BookingState.AWAIT_TIME: self._on_await_time,
            BookingState.AWAIT_NAME: self._on_await_name,
            BookingState.AWAIT_CONFIRM: self._on_await_confirm,
        }

    def handle(
        self,
        ctx: DialogueContext,
        stored: Any,
        text: str,
        message_id: Optional[str],
        now: datetime,
    ) -> DialogueOutcome:
        """Process one inbound message against the stored conversation (or None)."""
        if not ctx.tenant.bot_enabled:
            return DialogueOutcome(reply=None, dialogue=None, persist=False, skipped_reason=SKIP_BOT_DISABLED)

        if stored is not None and message_id and stored.last_message_id == message_id:
            return DialogueOutcome(reply=None, dialogue=None, persist=False, skipped_reason=SKIP_DUPLICATE)

        if stored is None or is_stale(stored, now, self.stale_window):
            current: Dialogue = Idle()
        else:
            current = load_dialogue(stored.state, stored.slots)

        if not isinstance(current, Idle) and is_negative(text):
            step = Step(Idle(), self._template(ctx, TEMPLATE_CANCELLED, {}))
        elif is_booking_trigger(text):
            step = self._start(ctx)
        else:
            step = self._handlers[current.state](ctx, current, text, now)

        dialogue = transition(current, step.dialogue)
        logger.info(
            "Dialogue step",
            extra={
                "context": {
                    "tenant_id": str(ctx.tenant.id),
                    "from_state": current.state.value,
                    "to_state": dialogue.state.value,
                    "replied": step.reply is not None,
                }
            },
        )
        return DialogueOutcome(reply=step.reply, dialogue=dialogue)

    # === MESSAGES ===

    def _template(self, ctx: DialogueContext, key: str, variables: dict[str, Any]) -> str:
        template = ctx.tenant.templates.get(key) if ctx.tenant.templates else None
        if not isinstance(template, str) or not template.strip():
            template = DEFAULT_TEMPLATES[key]
        base = {"nome_negocio": ctx.tenant.name, "endereco": ctx.tenant.address or ""}
        return interpolate(template, {**base, **variables})

    def _service_list(self, services: list[ServiceOption]) -> str:
        lines = []
        for index, service in enumerate(services, start=1):
            price = format_brl(service.price)
            lines.append(f"{index}. {service.name}" + (f" - {price}" if price else ""))
        return "\n".join(lines)

    def _times_list(self, slots: list[SlotAvailability]) -> str:
        blocks = []
        for label, times in group_times(slot.time for slot in slots):
            blocks.append(f"{label}: {', '.join(times)}")
        return "\n".join(blocks)

    def _summary(self, dialogue: AwaitConfirm) -> str:
        lines = ["Confira seu agendamento:", f"✂️ Serviço: {dialogue.service.name}"]
        if dialogue.quantity > 1:
            lines.append(f"👥 Quantidade: {dialogue.quantity}")
        lines.append(f"📅 Data: {format_date(dialogue.date)}")
        if dialogue.service.is_full_day:
            lines.append("⏰ Horário: dia inteiro")
        else:
            lines.append(f"⏰ Horário: {dialogue.time}")
        lines.append(f"🙋 Nome: {dialogue.customer_name}")
        return "\n".join(lines) + "\n\n" + MSG_CONFIRM_PROMPT

    # === HELPERS ===

    def _today(self, ctx: DialogueContext, now: datetime) -> date:
        return today_in_timezone(resolve_timezone(ctx.tenant.timezone, self.default_timezone), now)

    def _fitting_slots(self, ctx: DialogueContext, service: ServiceChoice, booking_date: date, quantity: int):
        query = SlotQuery(tenant_id=str(ctx.tenant.id), date=booking_date, service_id=service.id)
        slots = self.backend.get_available_slots(query)
        return [slot for slot in slots if slot.fits(quantity)]

    def _lookup_name(self, ctx: DialogueContext) -> Optional[str]:
        try:
            name = self.backend.find_customer_name(str(ctx.tenant.id), ctx.customer_phone)
        except BookingBackendError as e:
            logger.warning(
                "Customer name lookup failed",
                extra={"context": {"tenant_id": str(ctx.tenant.id), "error": str(e)}},
            )
            return None
        return name.strip() if name and len(name.strip()) >= 2 else None

    def _after_slot_chosen(self, ctx: DialogueContext, service: ServiceChoice, quantity: int, booking_date: date, time_value: str) -> Step:
        name = self._lookup_name(ctx)
        if name:
            confirm = AwaitConfirm(service, quantity, booking_date, time_value, name)
            return Step(confirm, self._summary(confirm))
        return Step(AwaitName(service, quantity, booking_date, time_value), MSG_ASK_NAME)

    def _match_services(self, services: list[ServiceOption], text: str) -> list[ServiceOption]:
        normalized = normalize_for_matching(text)
        if not normalized:
            return []
        if normalized.isdigit():
            index = int(normalized)
            return [services[index - 1]] if 1 <= index <= len(services) else []

        exact = [s for s in services if normalize_for_matching(s.name) == normalized]
        if exact:
            return exact
        matches = []
        for service in services:
            name = normalize_for_matching(service.name)
            if not name:
                continue
            if name in normalized or (len(normalized) >= 3 and normalized in name):
                matches.append(service)
        return matches

    # === HANDLERS ===

    def _start(self, ctx: DialogueContext) -> Step:
        if not ctx.services:
            return Step(Idle(), MSG_NO_SERVICES)
        welcome = self._template(ctx, TEMPLATE_WELCOME, {})
        return Step(AwaitService(), f"{welcome}\n\n{self._service_list(ctx.services)}")

    def _on_idle(self, ctx: DialogueContext, current: Idle, text: str, now: datetime) -> Step:
        return Step(Idle(), None)

    def _on_await_service(self, ctx: DialogueContext, current: AwaitService, text: str, now: datetime) -> Step:
        if not ctx.services:
            return Step(Idle(), MSG_NO_SERVICES)
        if is_price_request(text):
            return Step(current, f"{MSG_SERVICE_CATALOG}\n\n{self._service_list(ctx.services)}")

        matches = self._match_services(ctx.services, text)
        if len(matches) != 1:
            return Step(current, f"{MSG_SERVICE_NOT_UNDERSTOOD}\n\n{self._service_list(ctx.services)}")

        option = matches[0]
        service = ServiceChoice(
            id=option.id,
            name=option.name,
            capacity=max(option.capacity, 1),
            is_full_day=option.is_full_day,
        )
        if service.capacity > 1:
            return Step(AwaitQuantity(service), MSG_ASK_QUANTITY.format(capacity=service.capacity))
        return Step(AwaitDate(service, 1), MSG_ASK_DATE)

    def _on_await_quantity(self, ctx: DialogueContext, current: AwaitQuantity, text: str, now: datetime) -> Step:
        capacity = current.service.capacity
        quantity = parse_quantity(text)
        if quantity is None or quantity <= 0 or quantity > capacity:
            return Step(current, MSG_INVALID_QUANTITY.format(capacity=capacity))
        return Step(AwaitDate(current.service, quantity), MSG_ASK_DATE)

    def _on_await_date(self, ctx: DialogueContext, current: AwaitDate, text: str, now: datetime) -> Step:
        booking_date = parse_date(text, self._today(ctx, now))
        if booking_date is None:
            return Step(current, MSG_INVALID_DATE)

        try:
            slots = self._fitting_slots(ctx, current.service, booking_date, current.quantity)
        except BookingBackendError as e:
            logger.warning(
                "Availability query failed",
                extra={"context": {"tenant_id": str(ctx.tenant.id), "code": e.code, "error": str(e)}},
            )
            return Step(current, MSG_AVAILABILITY_ERROR)

        if not slots:
            return Step(current, MSG_NO_SLOTS.format(data=format_date(booking_date)))

        if current.service.is_full_day:
            return self._after_slot_chosen(ctx, current.service, current.quantity, booking_date, slots[0].time)

        next_step = AwaitTime(current.service, current.quantity, booking_date)
        return Step(
            next_step,
            MSG_ASK_TIME.format(data=format_date(booking_date), horarios=self._times_list(slots)),
        )

    def _on_await_time(self, ctx: DialogueContext, current: AwaitTime, text: str, now: datetime) -> Step:
        back_to_date = AwaitDate(current.service, current.quantity)
        try:
            slots = self._fitting_slots(ctx, current.service, current.date, current.quantity)
        except BookingBackendError as e:
            logger.warning(
                "Availability re-check failed",
                extra={"context": {"tenant_id": str(ctx.tenant.id), "code": e.code, "error": str(e)}},
            )
            return Step(back_to_date, MSG_AVAILABILITY_ERROR)

        if not slots:
            return Step(back_to_date, MSG_NO_SLOTS.format(data=format_date(current.date)))

        time_value = parse_time(text)
        if time_value is None and is_times_request(text):
            return Step(
                current,
                MSG_ASK_TIME.format(data=format_date(current.date), horarios=self._times_list(slots)),
            )

        available = {slot.time for slot in slots}
        if time_value is None or time_value not in available:
            return Step(current, MSG_INVALID_TIME.format(horarios=self._times_list(slots)))

        return self._after_slot_chosen(ctx, current.service, current.quantity, current.date, time_value)

    def _on_await_name(self, ctx: DialogueContext, current: AwaitName, text: str, now: datetime) -> Step:
        name = _NAME_PREFIX_RE.sub("", " ".join((text or "").split())).strip(" .,!")
        if len(name) < 2:
            return Step(current, MSG_INVALID_NAME)
        confirm = AwaitConfirm(current.service, current.quantity, current.date, current.time, name[:80])
        return Step(confirm, self._summary(confirm))

    def _on_await_confirm(self, ctx: DialogueContext, current: AwaitConfirm, text: str, now: datetime) -> Step:
        if not is_affirmative(text):
            return Step(current, MSG_CONFIRM_PROMPT)

        request = BookingRequest(
            tenant_id=str(ctx.tenant.id),
            date=current.date,
            time=current.time,
            service_id=current.service.id,
            customer_name=current.customer_name,
            customer_phone=ctx.customer_phone,
            quantity=current.quantity,
            origin_tag=self.origin_tag,
        )
        result = self.backend.create_booking(request)
        if result.ok:
            logger.info(
                "Booking created",
                extra={"context": {"tenant_id": str(ctx.tenant.id), "booking_id": result.value}},
            )
            variables = {
                "nome": current.customer_name,
                "data": format_date(current.date),
                "hora": "dia inteiro" if current.service.is_full_day else current.time,
                "servico": current.service.name,
                "quantidade": current.quantity,
            }
            return Step(Idle(), self._template(ctx, TEMPLATE_SUCCESS, variables))

        logger.warning(
            "Booking failed",
            extra={"context": {"tenant_id": str(ctx.tenant.id), "code": result.error_code, "error": result.error}},
        )
        reason = BOOKING_FAILURE_MESSAGES.get(result.error_code, MSG_BOOKING_FAILED)
        return Step(AwaitDate(current.service, current.quantity), f"{reason} {MSG_PICK_ANOTHER_DAY}")
