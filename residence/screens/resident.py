"""
Resident screens: lists scoped to the signed-in resident, and the requests a
resident can file from them.
"""

from typing import Any, Dict, List, Mapping, Sequence

from residence.core.exceptions import ValidationError
from residence.core.models import Attachment, Resource, Session
from residence.data import endpoints
from residence.data.api_client import ApiClient
from residence.screens.admin import LOCKER_STATUS_ORDER, NEWEST_FIRST, item_status_enricher
from residence.services.aggregation import ViewDefinition
from residence.services.enrichment import ItemEnricher
from residence.services.filtering import SortKind, SortSpec


def _resident_id(session: Session) -> int:
    if session.resident_id is None:
        raise ValidationError("No resident is linked to this account.", missing_fields=["resident_id"])
    return session.resident_id


def _scoped(path_for):
    return lambda session: path_for(_resident_id(session))


def _invoice_view(name: str, title: str, paid: bool) -> ViewDefinition:
    return ViewDefinition(
        name=name,
        title=title,
        path=_scoped(endpoints.resident_invoices),
        include=lambda invoice: bool(invoice.get("is_paid")) == paid,
        search_fields=("fee_type.name", "is_paid"),
        sort=(SortSpec("due_date", descending=paid, kind=SortKind.TIMESTAMP),),
        columns=("fee_type.name", "amount", "due_date", "is_paid"),
    )


MY_INVOICES = _invoice_view("my-invoices", "Unpaid invoices", paid=False)
MY_INVOICE_HISTORY = _invoice_view("my-invoice-history", "Payment history", paid=True)


def submit_payment_proof(invoice: Resource, proof: Attachment, method: str = "momo"):
    """Action uploading the proof of payment for an invoice."""
    if not proof.content:
        raise ValidationError("Please attach a proof of payment.", missing_fields=["proof_image"])

    async def action(client: ApiClient) -> Any:
        return await client.post(
            endpoints.PAYMENTS,
            {"invoice_id": invoice["id"], "method": method},
            attachments=[proof],
        )

    return action


def visitor_detail_enricher(session: Session) -> ItemEnricher:
    """Full visitor record; without it the summary record is shown as is."""

    async def fetch(client: ApiClient, visitor: Resource) -> Any:
        return await client.get(endpoints.resident_visitor(_resident_id(session), visitor["id"]))

    def derive(visitor: Resource, detail: Any) -> Dict[str, Any]:
        return dict(detail) if isinstance(detail, Mapping) else {}

    return ItemEnricher(field="detail", fetch=fetch, fallback={}, derive=derive)


def my_visitors(session: Session) -> ViewDefinition:
    return ViewDefinition(
        name="my-visitors",
        title="My visitors",
        path=_scoped(endpoints.resident_visitors),
        write_path=_scoped(endpoints.visitor_registration),
        enrichers=(visitor_detail_enricher(session),),
        search_fields=("full_name", "identity_card", "phone"),
        sort=(SortSpec("full_name"),),
        required_fields=("full_name", "identity_card", "phone"),
        writable_fields=("full_name", "identity_card", "phone", "relationship"),
        columns=("full_name", "phone", "is_approved"),
    )


MY_SURVEYS = ViewDefinition(
    name="my-surveys",
    title="My surveys",
    path=_scoped(endpoints.resident_surveys),
    search_fields=("title", "description"),
    sort=(SortSpec("deadline", descending=True, kind=SortKind.TIMESTAMP),),
    columns=("title", "deadline"),
)


def build_survey_answers(survey: Resource, answers: Mapping[Any, Any]) -> List[Dict[str, Any]]:
    """
    Shape chosen answers into the response payload.

    ``answers`` maps question id to one choice id, or to a list of choice ids
    for ``multiple`` questions. Every question must be answered.
    """
    questions = survey.get("questions") or []
    missing = [str(q["id"]) for q in questions if q["id"] not in answers or answers[q["id"]] in (None, [])]
    if missing:
        raise ValidationError("Please answer every question.", missing_fields=missing)

    shaped = []
    for question in questions:
        chosen = answers[question["id"]]
        if question.get("type") == "multiple":
            choices = list(chosen) if isinstance(chosen, (list, tuple, set)) else [chosen]
        else:
            choices = [chosen]
        shaped.append({"question": question["id"], "choices": choices})
    return shaped


def submit_survey(session: Session, survey: Resource, answers: Mapping[Any, Any]):
    """Action posting a resident's answers to a survey."""
    payload = {"survey": survey["id"], "answers": build_survey_answers(survey, answers)}

    async def action(client: ApiClient) -> Any:
        return await client.post(endpoints.survey_responses(_resident_id(session), survey["id"]), payload)

    return action


MY_COMPLAINTS = ViewDefinition(
    name="my-complaints",
    title="My complaints",
    path=endpoints.COMPLAINTS,
    search_fields=("title", "status"),
    sort=NEWEST_FIRST,
    required_fields=("title",),
    writable_fields=("title", "content"),
    columns=("title", "status", "create_time"),
)


def my_complaint_history() -> ViewDefinition:
    """Own complaints, with responses pulled in for the resolved ones."""

    async def fetch(client: ApiClient, complaint: Resource) -> Any:
        if not complaint.get("is_resolved"):
            return complaint.get("responses") or []
        detail = await client.get(endpoints.item(endpoints.COMPLAINTS, complaint["id"]))
        return (detail or {}).get("responses") or []

    return ViewDefinition(
        name="my-complaint-history",
        title="Complaint history",
        path=endpoints.COMPLAINTS,
        enrichers=(ItemEnricher(field="responses", fetch=fetch, fallback=[]),),
        search_fields=("title", "responses.content"),
        sort=NEWEST_FIRST,
        columns=("title", "status", "create_time"),
    )


def my_lockers(session: Session) -> ViewDefinition:
    return ViewDefinition(
        name="my-lockers",
        title="My locker",
        path=_scoped(endpoints.resident_lockers),
        items_key="items",
        enrichers=(item_status_enricher(_resident_id(session)),),
        search_fields=("name_item",),
        sort=(SortSpec("status", kind=SortKind.RANK, rank=LOCKER_STATUS_ORDER),),
        columns=("name_item", "status"),
    )


def my_apartment(apartment_id: Any) -> ViewDefinition:
    """Residents sharing the given apartment."""
    return ViewDefinition(
        name="my-apartment",
        title="My apartment",
        path=endpoints.apartment_residents(apartment_id),
        search_fields=("name",),
        sort=(SortSpec("name"),),
        columns=("name", "phone"),
    )


def views_for(session: Session, apartment_id: Any = None) -> Dict[str, ViewDefinition]:
    views: Sequence[ViewDefinition] = (
        MY_INVOICES,
        MY_INVOICE_HISTORY,
        my_visitors(session),
        MY_SURVEYS,
        MY_COMPLAINTS,
        my_complaint_history(),
        my_lockers(session),
    )
    registry = {view.name: view for view in views}
    if apartment_id is not None:
        registry["my-apartment"] = my_apartment(apartment_id)
    return registry
