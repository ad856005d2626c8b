"""Appointment booking flow.

collecting_service -> collecting_date -> collecting_time -> [collecting_name] -> confirming -> done
"""

import re
from datetime import date, datetime, timedelta
from typing import Optional

from relay.services.flows.base import (
    STATE_CANCELLED,
    STATE_DONE,
    CreateBooking,
    FlowContext,
    FlowDefinition,
    FlowState,
    Transition,
    is_no,
    is_yes,
    reprompt,
)
from relay.services.text_utils import normalize_for_matching

FLOW_ID = "booking"
DEFAULT_SLOTS = ("09:00", "10:00", "11:00", "14:00", "15:00", "16:00", "17:00")

WEEKDAYS = {
    "lundi": 0,
    "mardi": 1,
    "mercredi": 2,
    "jeudi": 3,
    "vendredi": 4,
    "samedi": 5,
    "dimanche": 6,
}
MONTHS = {
    "janvier": 1,
    "fevrier": 2,
    "mars": 3,
    "avril": 4,
    "mai": 5,
    "juin": 6,
    "juillet": 7,
    "aout": 8,
    "septembre": 9,
    "octobre": 10,
    "novembre": 11,
    "decembre": 12,
}

_NUMERIC_DATE = re.compile(r"\b(\d{1,2})[/.\-](\d{1,2})(?:[/.\-](\d{2,4}))?\b")
_WRITTEN_DATE = re.compile(r"\b(\d{1,2})(?:er)?\s+(" + "|".join(MONTHS) + r")(?:\s+(\d{4}))?\b")
_CLOCK_TIME = re.compile(r"\b(\d{1,2})\s*(?:h|:)\s*(\d{2})?\b")
_BARE_HOUR = re.compile(r"^\s*(?:a\s+)?(\d{1,2})\s*$")

MSG_ASK_DATE = "Pour quelle date souhaitez-vous réserver ? (ex : demain, jeudi, 15/03)"
MSG_BAD_DATE = "Je n'ai pas compris la date. Pouvez-vous préciser ? (ex : demain, jeudi, 15/03)"
MSG_PAST_DATE = "Cette date est déjà passée. Quelle autre date vous conviendrait ?"
MSG_ASK_NAME = "À quel nom dois-je enregistrer la réservation ?"
MSG_BAD_NAME = "Pouvez-vous m'indiquer votre nom ?"
MSG_CONFIRM_YES_NO = "Merci de répondre par oui ou non."


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_date(text: str, today: date) -> Optional[date]:
    """French relative days, weekday names, dd/mm[/yy] and "15 mars" forms."""
    normalized = normalize_for_matching(text)
    if not normalized:
        return None
    words = normalized.split()

    if "apres demain" in normalized:
        return today + timedelta(days=2)
    if "demain" in words:
        return today + timedelta(days=1)
    if "aujourd hui" in normalized or "ce soir" in normalized:
        return today
    for name, weekday in WEEKDAYS.items():
        if name in words:
            delta = (weekday - today.weekday()) % 7 or 7
            return today + timedelta(days=delta)

    match = _NUMERIC_DATE.search(text)
    if match:
        day, month = int(match.group(1)), int(match.group(2))
        if match.group(3):
            year = int(match.group(3))
            if year < 100:
                year += 2000
            return _safe_date(year, month, day)
        parsed = _safe_date(today.year, month, day)
        if parsed and parsed < today:
            parsed = _safe_date(today.year + 1, month, day)
        return parsed

    match = _WRITTEN_DATE.search(normalized)
    if match:
        day, month = int(match.group(1)), MONTHS[match.group(2)]
        if match.group(3):
            return _safe_date(int(match.group(3)), month, day)
        parsed = _safe_date(today.year, month, day)
        if parsed and parsed < today:
            parsed = _safe_date(today.year + 1, month, day)
        return parsed
    return None


def parse_time(text: str) -> Optional[str]:
    """``HH:MM`` from "14h", "14h30", "14:30", "midi", "minuit" or a bare hour."""
    lowered = (text or "").strip().lower()
    normalized = normalize_for_matching(lowered)
    if "midi" in normalized.split():
        return "12:00"
    if "minuit" in normalized.split():
        return "00:00"

    match = _CLOCK_TIME.search(lowered) or _BARE_HOUR.match(normalized)
    if not match:
        return None
    hour = int(match.group(1))
    minute = int(match.group(2)) if match.lastindex and match.lastindex >= 2 and match.group(2) else 0
    if hour > 23 or minute > 59:
        return None
    return f"{hour:02d}:{minute:02d}"


def format_date(value: date) -> str:
    return value.strftime("%d/%m/%Y")


def free_slots(booked: set[str], day: date, now: Optional[datetime] = None) -> list[str]:
    """Default opening slots minus booked ones, and minus past ones for today."""
    slots = [slot for slot in DEFAULT_SLOTS if slot not in booked]
    if now is not None and day == now.date():
        current = now.strftime("%H:%M")
        slots = [slot for slot in slots if slot > current]
    return slots


def _service_menu(services: tuple[str, ...]) -> str:
    return "\n".join(f"{index}. {service}" for index, service in enumerate(services, start=1))


def _match_service(text: str, services: tuple[str, ...]) -> Optional[str]:
    normalized = normalize_for_matching(text)
    if normalized.isdigit():
        index = int(normalized) - 1
        if 0 <= index < len(services):
            return services[index]
        return None
    for service in services:
        candidate = normalize_for_matching(service)
        if candidate and (candidate in normalized or normalized in candidate) and len(normalized) >= 3:
            return service
    return None


def _summary(data: dict) -> str:
    day = date.fromisoformat(data["date"])
    what = data.get("service") or "votre rendez-vous"
    return (
        f"Je récapitule : {what} le {format_date(day)} à {data['time']} au nom de {data['name']}. "
        "Je confirme ? (oui/non)"
    )


def start(context: FlowContext) -> Transition:
    if context.services:
        return Transition(
            next_state="collecting_service",
            reply=f"Avec plaisir ! Quel service souhaitez-vous réserver ?\n{_service_menu(context.services)}",
        )
    return Transition(next_state="collecting_date", reply=f"Avec plaisir ! {MSG_ASK_DATE}")


def collecting_service(data: dict, text: str, context: FlowContext) -> Transition:
    service = _match_service(text, context.services)
    if service is None:
        return reprompt(
            "collecting_service",
            f"Je n'ai pas reconnu ce service. Choisissez parmi :\n{_service_menu(context.services)}",
            data,
        )
    return Transition(
        next_state="collecting_date",
        reply=f"Très bien, {service}. {MSG_ASK_DATE}",
        data={**data, "service": service},
    )


def collecting_date(data: dict, text: str, context: FlowContext) -> Transition:
    day = parse_date(text, context.today)
    if day is None:
        return reprompt("collecting_date", MSG_BAD_DATE, data)
    if day < context.today:
        return reprompt("collecting_date", MSG_PAST_DATE, data)

    slots = context.available_slots(day)
    if not slots:
        return Transition(
            next_state="collecting_date",
            reply=f"Désolé, il n'y a plus de créneau disponible le {format_date(day)}. Une autre date ?",
            data=data,
        )
    return Transition(
        next_state="collecting_time",
        reply=f"Voici les créneaux disponibles le {format_date(day)} : {', '.join(slots)}. Quelle heure vous convient ?",
        data={**data, "date": day.isoformat()},
    )


def collecting_time(data: dict, text: str, context: FlowContext) -> Transition:
    day = date.fromisoformat(data["date"])
    slots = context.available_slots(day)
    chosen = parse_time(text)
    if chosen is None:
        return reprompt("collecting_time", f"Je n'ai pas compris l'heure. Créneaux libres : {', '.join(slots)}.", data)
    if chosen not in slots:
        return reprompt(
            "collecting_time",
            f"Le créneau de {chosen} n'est pas disponible. Créneaux libres : {', '.join(slots)}.",
            data,
        )

    data = {**data, "time": chosen}
    name = data.get("name") or context.customer_name
    if not name:
        return Transition(next_state="collecting_name", reply=MSG_ASK_NAME, data=data)
    data["name"] = name
    return Transition(next_state="confirming", reply=_summary(data), data=data)


def collecting_name(data: dict, text: str, context: FlowContext) -> Transition:
    name = " ".join((text or "").split())
    letters = sum(1 for ch in name if ch.isalpha())
    if letters < 2 or len(name) > 80:
        return reprompt("collecting_name", MSG_BAD_NAME, data)
    data = {**data, "name": name}
    return Transition(next_state="confirming", reply=_summary(data), data=data)


def confirming(data: dict, text: str, context: FlowContext) -> Transition:
    if is_yes(text):
        day = date.fromisoformat(data["date"])
        return Transition(
            next_state=STATE_DONE,
            reply=f"C'est confirmé ! Rendez-vous le {format_date(day)} à {data['time']}. À bientôt !",
            data=data,
            side_effects=(
                CreateBooking(
                    service=data.get("service"),
                    booking_date=day,
                    booking_time=data["time"],
                    customer_name=data.get("name"),
                ),
            ),
        )
    if is_no(text):
        return Transition(next_state=STATE_CANCELLED, reply="Pas de souci, la réservation est annulée.", data=data)
    return reprompt("confirming", MSG_CONFIRM_YES_NO, data)


BOOKING_FLOW = FlowDefinition(
    flow_id=FLOW_ID,
    description="Book an appointment slot",
    start=start,
    start_states=("collecting_service", "collecting_date"),
    states={
        "collecting_service": FlowState(collecting_service, ("collecting_date",)),
        "collecting_date": FlowState(collecting_date, ("collecting_time",)),
        "collecting_time": FlowState(collecting_time, ("collecting_name", "confirming")),
        "collecting_name": FlowState(collecting_name, ("confirming",)),
        "confirming": FlowState(confirming, (STATE_DONE, STATE_CANCELLED)),
    },
)
