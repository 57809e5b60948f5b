"""
Admin screens: building-wide lists and the writes admins perform on them.
"""

import asyncio
import re
from collections import Counter
from dataclasses import asdict, dataclass, field
from itertools import groupby
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog

from residence.core.exceptions import ValidationError
from residence.core.models import PaginationMode, Resource
from residence.data import endpoints
from residence.data.api_client import ApiClient
from residence.services.aggregation import ViewDefinition
from residence.services.enrichment import LABEL, CollectionJoin, enrich_records, sub_resource
from residence.services.filtering import SortKind, SortSpec

logger = structlog.get_logger(__name__)

FEE_TYPES: Dict[int, str] = {
    1: "Parking fee",
    2: "Management service fee",
    3: "System maintenance fee",
    4: "Electricity",
    5: "Water",
}

LOCKER_STATUS_ORDER = ("waiting", "received")

NEWEST_FIRST = (SortSpec("create_time", descending=True, kind=SortKind.TIMESTAMP),)


def resident_name_join(foreign_key: str = "resident", field: str = "resident_name") -> CollectionJoin:
    return CollectionJoin(field=field, path=endpoints.RESIDENTS, foreign_key=foreign_key, value="name")


# Apartments


def _split_household(apartment: Resource, residents: Any) -> Dict[str, Any]:
    residents = residents if isinstance(residents, list) else []
    head_id = apartment.get("household_head")
    head = next((r for r in residents if r.get("id") == head_id), None)
    return {
        "household_head_name": head.get("name") if head else None,
        "residents": [r for r in residents if r.get("id") != head_id],
    }


APARTMENTS = ViewDefinition(
    name="apartments",
    title="Apartments",
    path=endpoints.APARTMENTS,
    mode=PaginationMode.SERVER,
    enrichers=(
        sub_resource(
            "all_residents",
            lambda apartment: endpoints.apartment_residents(apartment["id"]),
            fallback=[],
            derive=_split_household,
        ),
    ),
    search_fields=("number", "price", "area", "household_head_name", "residents.name"),
    sort=(SortSpec("number"),),
    required_fields=("number", "price", "area"),
    writable_fields=("number", "price", "area", "household_head"),
    replace_on_update=True,
    form_writes=True,
    columns=("number", "area", "price", "household_head_name"),
)


# Accounts


ACCOUNTS = ViewDefinition(
    name="accounts",
    title="Accounts",
    path=endpoints.USERS,
    search_fields=("username", "first_name", "last_name"),
    sort=(SortSpec("username"),),
    required_fields=("username", "first_name", "last_name", "resident"),
    writable_fields=("username", "password", "first_name", "last_name", "resident", "is_active"),
    form_writes=True,
    page_size=10,
    columns=("username", "first_name", "last_name", "is_active"),
)


def toggle_account_lock(account: Resource):
    """Action flipping ``is_active`` on an account."""

    async def action(client: ApiClient) -> Any:
        return await client.patch(
            endpoints.item(endpoints.USERS, account["id"]),
            {"is_active": not account.get("is_active", True)},
            as_form=True,
        )

    return action


# Complaints


COMPLAINTS = ViewDefinition(
    name="complaints",
    title="Pending complaints",
    path=endpoints.COMPLAINTS,
    joins=(resident_name_join(),),
    include=lambda complaint: not complaint.get("is_resolved"),
    search_fields=("title", "resident_name"),
    sort=NEWEST_FIRST,
    page_size=3,
    columns=("title", "resident_name", "create_time"),
)

COMPLAINT_HISTORY = ViewDefinition(
    name="complaint-history",
    title="Resolved complaints",
    path=endpoints.COMPLAINTS,
    joins=(resident_name_join(),),
    enrichers=(
        sub_resource(
            "responses",
            lambda complaint: endpoints.item(endpoints.COMPLAINTS, complaint["id"]),
            fallback=[],
            select=lambda detail: detail.get("responses") or [],
        ),
    ),
    include=lambda complaint: bool(complaint.get("is_resolved")),
    search_fields=("title", "resident_name"),
    sort=NEWEST_FIRST,
    page_size=3,
    columns=("title", "resident_name", "create_time"),
)


def resolve_complaint(complaint_id: Any, content: str, title: str = ""):
    """Action answering a complaint and marking it resolved."""
    if not content or not content.strip():
        raise ValidationError("Please enter a response.", missing_fields=["content"])

    async def action(client: ApiClient) -> Any:
        await client.post(
            endpoints.complaint_responses(complaint_id),
            {"title": title, "content": content.strip()},
        )
        return await client.patch(
            endpoints.item(endpoints.COMPLAINTS, complaint_id),
            {"status": "resolved", "is_resolved": True},
        )

    return action


# Invoices and payments


def group_by_resident(invoices: List[Resource]) -> List[Resource]:
    """Collapse invoices into one record per resident name."""

    def name(invoice: Resource) -> str:
        return str(invoice.get("resident_name"))

    groups = []
    for title, members in groupby(sorted(invoices, key=name), key=name):
        data = list(members)
        groups.append(
            {
                "id": title,
                "title": title,
                "data": data,
                "invoice_count": len(data),
                "unpaid_count": sum(1 for i in data if not i.get("is_paid")),
            }
        )
    return groups


INVOICES = ViewDefinition(
    name="invoices",
    title="Invoices by resident",
    path=endpoints.INVOICES,
    joins=(resident_name_join(),),
    transform=group_by_resident,
    search_fields=("title",),
    sort=(SortSpec("title"),),
    required_fields=("resident", "fee_type_id", "amount", "due_date"),
    writable_fields=("resident", "fee_type_id", "amount", "due_date"),
    columns=("title", "invoice_count", "unpaid_count"),
)


def new_invoice(resident_id: Any, fee_type_id: int, amount: Any, due_date: Any) -> Resource:
    """Invoice record for ``mutate("create", ...)`` on the invoices view."""
    if fee_type_id not in FEE_TYPES:
        raise ValidationError(f"Unknown fee type: {fee_type_id}", missing_fields=["fee_type_id"])
    try:
        value = float(amount)
    except (TypeError, ValueError):
        value = 0.0
    if value <= 0:
        raise ValidationError("Amount must be a positive number.", missing_fields=["amount"])
    return {"resident": resident_id, "fee_type_id": fee_type_id, "amount": value, "due_date": due_date}


def decide_payment(payment: Resource, approve: bool):
    """Action approving or rejecting a submitted proof of payment."""
    invoice = payment.get("invoice") or {}
    fee_type = invoice.get("fee_type") or {}
    body = {
        "resident": payment.get("resident"),
        "fee_type_id": fee_type.get("id") if isinstance(fee_type, dict) else fee_type,
        "amount": payment.get("amount"),
    }

    async def action(client: ApiClient) -> Any:
        decision = "approve" if approve else "reject"
        return await client.post(endpoints.payment_decision(payment["id"], decision), body)

    return action


PAYMENTS = ViewDefinition(
    name="payments",
    title="Payment proofs",
    path=endpoints.PAYMENTS,
    joins=(resident_name_join(),),
    search_fields=("resident_name", "invoice.fee_type.name", "method"),
    sort=NEWEST_FIRST,
    columns=("resident_name", "invoice.fee_type.name", "amount", "method", "create_time"),
)


def payment_for_invoice(payments: Sequence[Resource], invoice_id: Any) -> Optional[Resource]:
    """The payment submitted for ``invoice_id``, if any."""
    for payment in payments:
        invoice = payment.get("invoice")
        reference = invoice.get("id") if isinstance(invoice, Mapping) else invoice
        if reference == invoice_id:
            return payment
    return None


async def find_payment_proof(client: ApiClient, invoice_id: Any) -> Optional[Resource]:
    return payment_for_invoice(await client.fetch_all(endpoints.PAYMENTS), invoice_id)


# Residents and occupancy


def _with_name_parts(residents: List[Resource]) -> List[Resource]:
    """Split full names into the given name (last word) and the words before it."""
    shaped = []
    for record in residents:
        words = str(record.get("name") or "").split()
        shaped.append(
            {
                **record,
                "given_name": words[-1] if words else "",
                "other_names": " ".join(words[:-1]),
            }
        )
    return shaped


RESIDENT_DIRECTORY = ViewDefinition(
    name="residents",
    title="Residents",
    path=endpoints.RESIDENTS,
    transform=_with_name_parts,
    search_fields=("name", "phone"),
    sort=(SortSpec("given_name"), SortSpec("other_names")),
    columns=("name", "phone"),
)


def _occupancy_view(name: str, title: str, occupied: bool) -> ViewDefinition:
    return ViewDefinition(
        name=name,
        title=title,
        path=endpoints.APARTMENTS,
        joins=(resident_name_join("household_head", "household_head_name"),),
        include=lambda apartment: bool(apartment.get("household_head")) == occupied,
        search_fields=("number", "household_head_name"),
        sort=(SortSpec("number"),),
        columns=("number", "household_head_name"),
    )


OCCUPIED_APARTMENTS = _occupancy_view("occupied-apartments", "Occupied apartments", True)
VACANT_APARTMENTS = _occupancy_view("vacant-apartments", "Vacant apartments", False)


@dataclass
class BuildingStatistics:
    apartments: int
    occupied: int
    vacant: int
    residents: int


async def building_statistics(client: ApiClient) -> BuildingStatistics:
    """Occupancy counts over every apartment and resident of the building."""
    apartments, residents = await asyncio.gather(
        client.fetch_all(endpoints.APARTMENTS), client.fetch_all(endpoints.RESIDENTS)
    )
    occupied = sum(1 for apartment in apartments if apartment.get("household_head"))
    stats = BuildingStatistics(
        apartments=len(apartments),
        occupied=occupied,
        vacant=len(apartments) - occupied,
        residents=len(residents),
    )
    logger.info("Building statistics computed", **asdict(stats))
    return stats


async def resident_detail(client: ApiClient, resident_id: Any, label: str = "unknown") -> Resource:
    """
    One resident with their parking card under ``parking_card``.

    Residents without a card get ``None``; the API answers that lookup with an
    error status rather than an empty body.
    """
    resident = await client.get(endpoints.item(endpoints.RESIDENTS, resident_id)) or {}
    card = sub_resource(
        "parking_card",
        lambda record: endpoints.resident_parking_card(resident_id),
        fallback=None,
    )
    enriched = await enrich_records(client, [resident], enrichers=[card], label=label)
    return enriched[0]


# Lockers


LOCKERS = ViewDefinition(
    name="lockers",
    title="Lockers",
    path=endpoints.LOCKER_ITEMS,
    joins=(resident_name_join(),),
    search_fields=("locker_number", "resident_name"),
    sort=(SortSpec("locker_number", kind=SortKind.NUMBER),),
    columns=("locker_number", "resident_name"),
)


def item_status_enricher(resident_id: Any):
    return sub_resource(
        "status",
        lambda item: endpoints.locker_item_status(resident_id, item["id"]),
        fallback=LABEL,
        select=lambda detail: detail.get("status"),
    )


def locker_detail(locker_id: Any, resident_id: Any) -> ViewDefinition:
    """Items of one locker with their pick-up status, waiting items first."""
    return ViewDefinition(
        name="locker-detail",
        title=f"Locker {locker_id}",
        path=endpoints.locker(locker_id),
        items_key="items",
        write_path=endpoints.locker_items(locker_id),
        enrichers=(item_status_enricher(resident_id),),
        search_fields=("name_item",),
        sort=(SortSpec("status", kind=SortKind.RANK, rank=LOCKER_STATUS_ORDER),),
        required_fields=("name_item",),
        writable_fields=("name_item", "status"),
        form_writes=True,
        columns=("name_item", "status"),
    )


# Parking cards and guests


def _cards_view(name: str, title: str, owner: str) -> ViewDefinition:
    return ViewDefinition(
        name=name,
        title=title,
        path=endpoints.PARKING_CARDS,
        joins=(
            CollectionJoin(
                field="visitor_name",
                path=endpoints.VISITORS,
                foreign_key="visitor",
                value="full_name",
            ),
            resident_name_join(),
        ),
        include=lambda card: bool(card.get(owner)),
        search_fields=("card_number", "license_plate", f"{owner}_name"),
        sort=(SortSpec("card_number"),),
        required_fields=("card_number", "vehicle_type", "license_plate"),
        writable_fields=(
            "card_number",
            "vehicle_type",
            "license_plate",
            "color",
            "resident",
            "visitor",
        ),
        form_writes=True,
        columns=("card_number", "vehicle_type", "license_plate", f"{owner}_name"),
    )


RESIDENT_CARDS = _cards_view("resident-cards", "Resident parking cards", "resident")
VISITOR_CARDS = _cards_view("visitor-cards", "Visitor parking cards", "visitor")

_CARD_NUMBER = re.compile(r"^N(\d+)$")


def next_card_number(cards: Sequence[Resource]) -> str:
    """Next free ``N###`` card number after the highest one in use."""
    used = []
    for card in cards:
        match = _CARD_NUMBER.match(str(card.get("card_number") or ""))
        if match:
            used.append(int(match.group(1)))
    return f"N{(max(used) + 1 if used else 1):03d}"


def card_eligible_visitors(visitors: Sequence[Resource]) -> List[Resource]:
    """Approved visitors who do not hold a parking card yet."""
    return [v for v in visitors if v.get("parking_card") is None and v.get("is_approved")]


def issue_parking_card(
    vehicle_type: str,
    license_plate: str,
    resident_id: Optional[Any] = None,
    visitor_id: Optional[Any] = None,
    color: str = "",
):
    """Action issuing a card numbered after every card currently in use."""
    if not license_plate.strip():
        raise ValidationError("Please enter a license plate.", missing_fields=["license_plate"])
    if (resident_id is None) == (visitor_id is None):
        raise ValidationError(
            "A card belongs to exactly one resident or visitor.",
            missing_fields=["resident", "visitor"],
        )

    async def action(client: ApiClient) -> Any:
        cards = await client.fetch_all(endpoints.PARKING_CARDS)
        payload = {
            "card_number": next_card_number(cards),
            "vehicle_type": vehicle_type,
            "license_plate": license_plate.strip(),
            "resident": resident_id,
            "visitor": visitor_id,
        }
        if color.strip():
            payload["color"] = color.strip()
        return await client.post(endpoints.PARKING_CARDS, payload, as_form=True)

    return action


GUESTS = ViewDefinition(
    name="guests",
    title="Guests",
    path=endpoints.VISITORS,
    search_fields=("full_name", "phone", "identity_card"),
    sort=(SortSpec("full_name"),),
    columns=("full_name", "phone", "is_approved"),
)


def approve_guest(guest_id: Any):
    async def action(client: ApiClient) -> Any:
        return await client.patch(endpoints.item(endpoints.VISITORS, guest_id), {"is_approved": True})

    return action


# Surveys


SURVEYS = ViewDefinition(
    name="surveys",
    title="Surveys",
    path=endpoints.SURVEYS,
    search_fields=("title", "description"),
    sort=(SortSpec("deadline", descending=True, kind=SortKind.TIMESTAMP),),
    required_fields=("title", "deadline", "questions"),
    columns=("title", "deadline"),
)


UNKNOWN_RESPONDENT = "Unknown resident"


@dataclass
class QuestionResult:
    question: Resource
    # Respondent name -> chosen choice texts
    answers_by_resident: Dict[str, List[str]] = field(default_factory=dict)
    # {"choice", "count", "percentage"} in first-seen order
    tally: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class SurveyResults:
    survey: Resource
    responses: int
    questions: List[QuestionResult]


def _choice_text(choice: Any) -> str:
    return str(choice.get("text")) if isinstance(choice, Mapping) else str(choice)


def tally_question(question: Resource, responses: Sequence[Resource]) -> QuestionResult:
    """Collect the answers given to one question across all responses."""
    result = QuestionResult(question=question)
    counts: Counter = Counter()
    keys = [key for key in (question.get("text"), question.get("id")) if key is not None]

    for response in responses:
        respondent = str(response.get("user") or UNKNOWN_RESPONDENT)
        for answer in response.get("answers") or []:
            if answer.get("question") not in keys:
                continue
            texts = [_choice_text(c) for c in answer.get("choices") or []]
            result.answers_by_resident.setdefault(respondent, []).extend(texts)
            counts.update(texts)

    total = sum(counts.values())
    result.tally = [
        {"choice": text, "count": n, "percentage": round(n / total * 100, 2)}
        for text, n in counts.items()
    ]
    return result


async def survey_results(client: ApiClient, survey_id: Any) -> SurveyResults:
    """A survey with the answers of every response tallied per question."""
    survey, responses = await asyncio.gather(
        client.get(endpoints.item(endpoints.SURVEYS, survey_id)),
        client.fetch_all(endpoints.survey_results(survey_id)),
    )
    survey = survey or {}
    questions = [tally_question(q, responses) for q in survey.get("questions") or []]
    logger.info(
        "Survey results tallied", survey_id=survey_id, responses=len(responses), questions=len(questions)
    )
    return SurveyResults(survey=survey, responses=len(responses), questions=questions)


VIEWS = {
    view.name: view
    for view in (
        APARTMENTS,
        ACCOUNTS,
        COMPLAINTS,
        COMPLAINT_HISTORY,
        INVOICES,
        LOCKERS,
        RESIDENT_CARDS,
        VISITOR_CARDS,
        GUESTS,
        SURVEYS,
        PAYMENTS,
        RESIDENT_DIRECTORY,
        OCCUPIED_APARTMENTS,
        VACANT_APARTMENTS,
    )
}
