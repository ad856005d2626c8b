"""Lead capture flow.

collecting_interest -> [collecting_name] -> collecting_contact -> collecting_email / collecting_phone
-> collecting_availability -> confirming -> done
"""

import re

from relay.services.flows.base import (
    STATE_CANCELLED,
    STATE_DONE,
    CaptureLead,
    FlowContext,
    FlowDefinition,
    FlowState,
    Transition,
    is_no,
    is_yes,
    reprompt,
)
from relay.services.phone import normalize_phone
from relay.services.text_utils import normalize_for_matching

FLOW_ID = "lead_capture"

_EMAIL = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")
SAME_NUMBER_PHRASES = ("ce numero", "celui ci", "meme numero", "this number", "same number")

MSG_ASK_CONTACT = "Comment préférez-vous être recontacté : email, téléphone ou les deux ?"
MSG_ASK_EMAIL = "Quelle est votre adresse email ?"
MSG_ASK_PHONE = "Sur quel numéro pouvons-nous vous joindre ? (répondez « ce numéro » pour utiliser celui-ci)"
MSG_ASK_AVAILABILITY = "Quand êtes-vous disponible pour être recontacté ?"


def _contact_reply(data: dict) -> str:
    return f"Merci {data['name']} ! {MSG_ASK_CONTACT}"


def _summary(data: dict) -> str:
    parts = [f"intérêt : {data['interest']}", f"nom : {data['name']}"]
    if data.get("email"):
        parts.append(f"email : {data['email']}")
    if data.get("phone"):
        parts.append(f"téléphone : {data['phone']}")
    parts.append(f"disponibilités : {data['availability']}")
    return "Je récapitule (" + ", ".join(parts) + "). C'est bien ça ? (oui/non)"


def start(context: FlowContext) -> Transition:
    return Transition(next_state="collecting_interest", reply="Avec plaisir ! Qu'est-ce qui vous intéresse exactement ?")


def collecting_interest(data: dict, text: str, context: FlowContext) -> Transition:
    interest = " ".join((text or "").split())
    if len(normalize_for_matching(interest)) < 3:
        return reprompt("collecting_interest", "Pouvez-vous préciser ce qui vous intéresse ?", data)
    data = {**data, "interest": interest[:300]}
    if context.customer_name:
        data["name"] = context.customer_name
        return Transition(next_state="collecting_contact", reply=_contact_reply(data), data=data)
    return Transition(next_state="collecting_name", reply="Très bien ! Quel est votre nom ?", data=data)


def collecting_name(data: dict, text: str, context: FlowContext) -> Transition:
    name = " ".join((text or "").split())
    if sum(1 for ch in name if ch.isalpha()) < 2 or len(name) > 80:
        return reprompt("collecting_name", "Pouvez-vous m'indiquer votre nom ?", data)
    data = {**data, "name": name}
    return Transition(next_state="collecting_contact", reply=_contact_reply(data), data=data)


def collecting_contact(data: dict, text: str, context: FlowContext) -> Transition:
    normalized = normalize_for_matching(text)
    words = set(normalized.split())
    wants_email = bool(words & {"email", "mail", "courriel"}) or "e mail" in normalized
    wants_phone = bool(words & {"telephone", "tel", "phone", "appel", "appeler", "whatsapp", "numero"})
    both = bool(words & {"deux", "both"})
    if both or (wants_email and wants_phone):
        return Transition(next_state="collecting_email", reply=MSG_ASK_EMAIL, data={**data, "contact_method": "both"})
    if wants_email:
        return Transition(next_state="collecting_email", reply=MSG_ASK_EMAIL, data={**data, "contact_method": "email"})
    if wants_phone:
        return Transition(next_state="collecting_phone", reply=MSG_ASK_PHONE, data={**data, "contact_method": "phone"})
    return reprompt("collecting_contact", MSG_ASK_CONTACT, data)


def collecting_email(data: dict, text: str, context: FlowContext) -> Transition:
    match = _EMAIL.search(text or "")
    if not match:
        return reprompt("collecting_email", "Cette adresse email ne semble pas valide. Pouvez-vous la vérifier ?", data)
    data = {**data, "email": match.group(0).lower()}
    if data.get("contact_method") == "both":
        return Transition(next_state="collecting_phone", reply=MSG_ASK_PHONE, data=data)
    return Transition(next_state="collecting_availability", reply=MSG_ASK_AVAILABILITY, data=data)


def collecting_phone(data: dict, text: str, context: FlowContext) -> Transition:
    normalized = normalize_for_matching(text)
    if any(phrase in normalized for phrase in SAME_NUMBER_PHRASES) and context.customer_phone:
        phone = context.customer_phone
    else:
        phone = normalize_phone(text)
        if phone is None or not 8 <= len(phone) - 1 <= 15:
            return reprompt("collecting_phone", "Ce numéro ne semble pas valide. Pouvez-vous le vérifier ?", data)
    return Transition(
        next_state="collecting_availability",
        reply=MSG_ASK_AVAILABILITY,
        data={**data, "phone": phone},
    )


def collecting_availability(data: dict, text: str, context: FlowContext) -> Transition:
    availability = " ".join((text or "").split())
    if len(normalize_for_matching(availability)) < 2:
        return reprompt("collecting_availability", MSG_ASK_AVAILABILITY, data)
    data = {**data, "availability": availability[:200]}
    return Transition(next_state="confirming", reply=_summary(data), data=data)


def confirming(data: dict, text: str, context: FlowContext) -> Transition:
    if is_yes(text):
        return Transition(
            next_state=STATE_DONE,
            reply="Merci ! Un conseiller vous recontacte très vite.",
            data=data,
            side_effects=(
                CaptureLead(
                    name=data.get("name"),
                    interest=data.get("interest"),
                    email=data.get("email"),
                    phone=data.get("phone"),
                    availability=data.get("availability"),
                ),
            ),
        )
    if is_no(text):
        return Transition(next_state=STATE_CANCELLED, reply="Pas de souci, je n'enregistre rien.", data=data)
    return reprompt("confirming", "Merci de répondre par oui ou non.", data)


LEAD_CAPTURE_FLOW = FlowDefinition(
    flow_id=FLOW_ID,
    description="Collect a prospect's interest and contact details",
    start=start,
    start_states=("collecting_interest",),
    states={
        "collecting_interest": FlowState(collecting_interest, ("collecting_name", "collecting_contact")),
        "collecting_name": FlowState(collecting_name, ("collecting_contact",)),
        "collecting_contact": FlowState(collecting_contact, ("collecting_email", "collecting_phone")),
        "collecting_email": FlowState(collecting_email, ("collecting_phone", "collecting_availability")),
        "collecting_phone": FlowState(collecting_phone, ("collecting_availability",)),
        "collecting_availability": FlowState(collecting_availability, ("confirming",)),
        "confirming": FlowState(confirming, (STATE_DONE, STATE_CANCELLED)),
    },
)
