"""
Tests for the admin and resident screens built on the aggregation view-model.
"""

from datetime import date
from urllib.parse import parse_qs

import httpx
import pytest

from residence.core.config import ViewConfig
from residence.core.exceptions import ConfigurationError, ServerError, ValidationError
from residence.core.models import Attachment, Session, WriteOperation
from residence.screens import admin, available_views, open_view, resident
from residence.services.aggregation import AggregationViewModel

from .conftest import BASE_URL

HOUSEHOLD = [
    {"id": 3, "name": "Tran Van An", "phone": "0901"},
    {"id": 4, "name": "Tran Thi Binh", "phone": "0902"},
]


def _form(request: httpx.Request):
    fields = parse_qs(request.content.decode(), keep_blank_values=True)
    return {k: v[0] for k, v in fields.items()}


class TestRegistry:
    """Test which views a session may open."""

    def test_admin_views(self, admin_session):
        views = available_views(admin_session)

        assert {"apartments", "accounts", "complaints", "invoices", "guests"} <= set(views)
        assert not any(name.startswith("my-") for name in views)

    def test_resident_views(self, resident_session):
        views = available_views(resident_session)

        assert "my-invoices" in views
        assert "my-lockers" in views
        assert "apartments" not in views
        assert "my-apartment" not in views

    def test_resident_apartment_view(self, resident_session):
        views = available_views(resident_session, apartment_id=12)
        assert views["my-apartment"].collection_path(resident_session) == "/apartments/12/residents/"

    def test_unknown_view(self, client, resident_session):
        with pytest.raises(ConfigurationError) as exc_info:
            open_view(client, resident_session, "apartments")
        assert "my-invoices" in exc_info.value.details["available"]

    def test_view_page_size(self, client, admin_session):
        config = ViewConfig(PAGE_SIZE=8)

        assert open_view(client, admin_session, "complaints", config).page_size == 3
        assert open_view(client, admin_session, "guests", config).page_size == 8


class TestApartments:
    """Test the server paginated apartment list."""

    @pytest.mark.asyncio
    async def test_household_split(self, api, client, admin_session):
        api.route(
            "GET",
            "/apartments/",
            {
                "count": 1,
                "next": None,
                "previous": None,
                "results": [{"id": 1, "number": "A-101", "household_head": 3}],
            },
        )
        api.route("GET", "/apartments/1/residents/", HOUSEHOLD)
        view = open_view(client, admin_session, "apartments")

        page = await view.load()

        apartment = page.items[0]
        assert apartment["household_head_name"] == "Tran Van An"
        assert apartment["residents"] == [HOUSEHOLD[1]]

    @pytest.mark.asyncio
    async def test_search_by_resident_name(self, api, client, admin_session):
        def apartments(request):
            if request.url.params.get("page", "1") == "1":
                return {
                    "count": 2,
                    "next": f"{BASE_URL}/apartments/?page=2",
                    "previous": None,
                    "results": [{"id": 1, "number": "A-101", "household_head": 3}],
                }
            return {
                "count": 2,
                "next": None,
                "previous": f"{BASE_URL}/apartments/",
                "results": [{"id": 2, "number": "B-202", "household_head": None}],
            }

        api.route("GET", "/apartments/", apartments)
        api.route("GET", "/apartments/1/residents/", HOUSEHOLD)
        api.route("GET", "/apartments/2/residents/", {"detail": "boom"}, status=500)
        view = open_view(client, admin_session, "apartments")

        page = await view.load("binh")

        assert [a["number"] for a in page.items] == ["A-101"]

    @pytest.mark.asyncio
    async def test_update_replaces_with_form(self, api, client, admin_session):
        api.route("GET", "/apartments/", [])
        api.route("PUT", "/apartments/1/", {"id": 1})
        view = open_view(client, admin_session, "apartments")
        apartment = {
            "id": 1,
            "number": "A-101",
            "price": 1500,
            "area": 72.5,
            "household_head": 3,
            "household_head_name": "Tran Van An",
        }

        await view.mutate(WriteOperation.UPDATE, apartment)

        request = api.calls("PUT")[0]
        assert _form(request) == {
            "number": "A-101",
            "price": "1500",
            "area": "72.5",
            "household_head": "3",
        }


class TestComplaints:
    """Test complaint lists and the resolve action."""

    COMPLAINTS = [
        {
            "id": 1,
            "title": "Noise",
            "resident": 3,
            "is_resolved": False,
            "create_time": "2024-03-01T08:00:00Z",
        },
        {
            "id": 2,
            "title": "Leak",
            "resident": 4,
            "is_resolved": False,
            "create_time": "2024-03-05T08:00:00Z",
        },
        {
            "id": 3,
            "title": "Lift",
            "resident": 9,
            "is_resolved": True,
            "create_time": "2024-03-04T08:00:00Z",
        },
    ]

    @pytest.mark.asyncio
    async def test_pending_newest_first_with_names(self, api, client, admin_session):
        api.route("GET", "/complaints/", self.COMPLAINTS)
        api.route("GET", "/residents/", HOUSEHOLD)
        view = open_view(client, admin_session, "complaints")

        page = await view.load()

        assert [(c["title"], c["resident_name"]) for c in page.items] == [
            ("Leak", "Tran Thi Binh"),
            ("Noise", "Tran Van An"),
        ]

    @pytest.mark.asyncio
    async def test_history_with_responses(self, api, client, admin_session):
        api.route("GET", "/complaints/", self.COMPLAINTS)
        api.route("GET", "/residents/", HOUSEHOLD)
        api.route("GET", "/complaints/3/", {"id": 3, "responses": [{"content": "Fixed"}]})
        view = open_view(client, admin_session, "complaint-history")

        page = await view.load()

        assert len(page.items) == 1
        assert page.items[0]["resident_name"] == "unknown"
        assert page.items[0]["responses"] == [{"content": "Fixed"}]

    def test_resolve_requires_content(self):
        with pytest.raises(ValidationError):
            admin.resolve_complaint(1, "  ")

    @pytest.mark.asyncio
    async def test_resolve(self, api, client, admin_session):
        api.route("GET", "/complaints/", [])
        api.route("POST", "/complaints/1/complaintresponses/", {"id": 5}, status=201)
        api.route("PATCH", "/complaints/1/", {"id": 1})
        view = open_view(client, admin_session, "complaints")

        await view.run_action(admin.resolve_complaint(1, " Fixed the pipe ", title="Leak"))

        assert api.json_body(api.calls("POST")[0]) == {"title": "Leak", "content": "Fixed the pipe"}
        assert api.json_body(api.calls("PATCH")[0]) == {"status": "resolved", "is_resolved": True}
        assert len(api.calls("GET", "/complaints/")) == 1


class TestInvoicesAndPayments:
    @pytest.mark.asyncio
    async def test_grouped_by_resident(self, api, client, admin_session):
        api.route(
            "GET",
            "/invoices/",
            [
                {"id": 1, "resident": 4, "is_paid": False},
                {"id": 2, "resident": 3, "is_paid": True},
                {"id": 3, "resident": 4, "is_paid": True},
            ],
        )
        api.route("GET", "/residents/", HOUSEHOLD)
        view = open_view(client, admin_session, "invoices")

        page = await view.load()

        assert [(g["title"], g["invoice_count"], g["unpaid_count"]) for g in page.items] == [
            ("Tran Thi Binh", 2, 1),
            ("Tran Van An", 1, 0),
        ]

    @pytest.mark.asyncio
    async def test_create_invoice(self, api, client, admin_session):
        api.route("GET", "/invoices/", [])
        api.route("POST", "/invoices/", {"id": 1}, status=201)
        view = open_view(client, admin_session, "invoices")

        await view.mutate("create", admin.new_invoice(3, 4, "150000", date(2024, 6, 30)))

        assert api.json_body(api.calls("POST")[0]) == {
            "resident": 3,
            "fee_type_id": 4,
            "amount": 150000.0,
            "due_date": "2024-06-30",
        }

    @pytest.mark.parametrize("fee_type_id,amount", [(9, 100), (1, "abc"), (1, -5)])
    def test_invalid_invoice(self, fee_type_id, amount):
        with pytest.raises(ValidationError):
            admin.new_invoice(3, fee_type_id, amount, date(2024, 6, 30))

    @pytest.mark.asyncio
    async def test_decide_payment(self, api, client):
        api.route("POST", "/payments/8/reject/", {"status": "rejected"})
        payment = {"id": 8, "resident": 3, "amount": 200, "invoice": {"fee_type": {"id": 4}}}

        await admin.decide_payment(payment, approve=False)(client)

        assert api.json_body(api.calls("POST")[0]) == {"resident": 3, "fee_type_id": 4, "amount": 200}

    @pytest.mark.asyncio
    async def test_resident_unpaid_invoices(self, api, resident_client, resident_session):
        api.route(
            "GET",
            "/residents/42/invoices/",
            [
                {"id": 1, "due_date": "2024-05-01", "is_paid": False},
                {"id": 2, "due_date": "2024-04-01", "is_paid": False},
                {"id": 3, "due_date": "2024-03-01", "is_paid": True},
            ],
        )
        view = open_view(resident_client, resident_session, "my-invoices")

        page = await view.load()

        assert [i["id"] for i in page.items] == [2, 1]

    @pytest.mark.asyncio
    async def test_payment_proofs_listed(self, api, client, admin_session):
        api.route(
            "GET",
            "/payments/",
            [
                {"id": 8, "resident": 3, "amount": 200, "create_time": "2024-05-01T08:00:00Z"},
                {"id": 9, "resident": 4, "amount": 300, "create_time": "2024-05-02T08:00:00Z"},
            ],
        )
        api.route("GET", "/residents/", HOUSEHOLD)
        view = open_view(client, admin_session, "payments")

        page = await view.load()

        assert [(p["id"], p["resident_name"]) for p in page.items] == [
            (9, "Tran Thi Binh"),
            (8, "Tran Van An"),
        ]

    @pytest.mark.asyncio
    async def test_decide_listed_payment(self, api, client, admin_session):
        payment = {"id": 8, "resident": 3, "amount": 200, "invoice": {"id": 1, "fee_type": {"id": 2}}}
        api.route("GET", "/payments/", [payment])
        api.route("GET", "/residents/", HOUSEHOLD)
        api.route("POST", "/payments/8/approve/", {"status": "approved"})
        view = open_view(client, admin_session, "payments")
        await view.load()

        await view.run_action(admin.decide_payment(view.find(8), approve=True))

        assert api.json_body(api.calls("POST")[0]) == {"resident": 3, "fee_type_id": 2, "amount": 200}
        assert len(api.calls("GET", "/payments/")) == 2

    @pytest.mark.asyncio
    async def test_find_payment_proof(self, api, client):
        api.route(
            "GET",
            "/payments/",
            [
                {"id": 8, "invoice": {"id": 1}, "proof_image": "a.png"},
                {"id": 9, "invoice": 2, "proof_image": "b.png"},
            ],
        )

        assert (await admin.find_payment_proof(client, 2))["id"] == 9
        assert (await admin.find_payment_proof(client, 1))["id"] == 8
        assert await admin.find_payment_proof(client, 5) is None

    def test_payment_proof_required(self):
        empty = Attachment(field="proof_image", filename="proof.png", content=b"")
        with pytest.raises(ValidationError):
            resident.submit_payment_proof({"id": 1}, empty)

APARTMENT_PAGES = {
    "1": {
        "count": 3,
        "next": f"{BASE_URL}/apartments/?page=2",
        "previous": None,
        "results": [
            {"id": 1, "number": "A-101", "household_head": 3},
            {"id": 2, "number": "A-102", "household_head": None},
        ],
    },
    "2": {
        "count": 3,
        "next": None,
        "previous": f"{BASE_URL}/apartments/?page=1",
        "results": [{"id": 3, "number": "A-103", "household_head": 4}],
    },
}


def _apartment_mirror(request: httpx.Request):
    return APARTMENT_PAGES[request.url.params.get("page", "1")]


class TestResidentsAndStatistics:
    @pytest.mark.asyncio
    async def test_residents_by_given_name(self, api, client, admin_session):
        api.route(
            "GET",
            "/residents/",
            [
                {"id": 1, "name": "Nguyen Van Binh"},
                {"id": 2, "name": "Tran Thi An"},
                {"id": 3, "name": "Le Van An"},
                {"id": 4, "name": ""},
            ],
        )
        view = open_view(client, admin_session, "residents")

        page = await view.load()

        assert [r["id"] for r in page.items] == [3, 2, 1, 4]
        assert page.items[0]["given_name"] == "An"
        assert page.items[0]["other_names"] == "Le Van"

    @pytest.mark.asyncio
    async def test_occupancy_views_mirror_every_page(self, api, client, admin_session):
        api.route("GET", "/apartments/", _apartment_mirror)
        api.route("GET", "/residents/", HOUSEHOLD)

        occupied = await open_view(client, admin_session, "occupied-apartments").load()
        vacant = await open_view(client, admin_session, "vacant-apartments").load()

        assert [(a["number"], a["household_head_name"]) for a in occupied.items] == [
            ("A-101", "Tran Van An"),
            ("A-103", "Tran Thi Binh"),
        ]
        assert [a["number"] for a in vacant.items] == ["A-102"]

    @pytest.mark.asyncio
    async def test_building_statistics(self, api, client):
        api.route("GET", "/apartments/", _apartment_mirror)
        api.route("GET", "/residents/", HOUSEHOLD)

        stats = await admin.building_statistics(client)

        assert stats == admin.BuildingStatistics(apartments=3, occupied=2, vacant=1, residents=2)
        assert len(api.calls("GET", "/apartments/")) == 2

    @pytest.mark.asyncio
    async def test_building_statistics_failure_propagates(self, api, client):
        api.route("GET", "/apartments/", {"detail": "boom"}, status=500)
        api.route("GET", "/residents/", HOUSEHOLD)

        with pytest.raises(ServerError):
            await admin.building_statistics(client)

    @pytest.mark.asyncio
    async def test_resident_detail_with_card(self, api, client):
        api.route("GET", "/residents/3/", {"id": 3, "name": "Tran Van An"})
        api.route("GET", "/residents/3/parkingcard/", {"card_number": "N004", "vehicle_type": "car"})

        detail = await admin.resident_detail(client, 3)

        assert detail["name"] == "Tran Van An"
        assert detail["parking_card"]["card_number"] == "N004"

    @pytest.mark.asyncio
    async def test_resident_detail_without_card(self, api, client):
        api.route("GET", "/residents/3/", {"id": 3, "name": "Tran Van An"})
        api.route("GET", "/residents/3/parkingcard/", {"detail": "none"}, status=500)

        detail = await admin.resident_detail(client, 3)

        assert detail["parking_card"] is None


SURVEY = {
    "id": 2,
    "title": "Gym hours",
    "questions": [
        {"id": 10, "text": "Preferred time?", "choices": [{"id": 1, "text": "Morning"}]},
        {"id": 11, "text": "Facilities?", "type": "multiple"},
        {"id": 12, "text": "Comments?"},
    ],
}

SURVEY_RESPONSES = [
    {
        "user": "lan",
        "answers": [
            {"question": "Preferred time?", "choices": [{"text": "Morning"}]},
            {"question": "Facilities?", "choices": [{"text": "Pool"}, {"text": "Sauna"}]},
        ],
    },
    {
        "user": None,
        "answers": [
            {"question": "Preferred time?", "choices": [{"text": "Evening"}]},
            {"question": 11, "choices": [{"text": "Pool"}]},
        ],
    },
    {"user": "minh", "answers": [{"question": "Preferred time?", "choices": [{"text": "Morning"}]}]},
]


class TestSurveyResults:
    @pytest.mark.asyncio
    async def test_answers_tallied_per_question(self, api, client):
        api.route("GET", "/surveys/2/", SURVEY)
        api.route("GET", "/surveys/2/responses/", SURVEY_RESPONSES)

        results = await admin.survey_results(client, 2)

        assert results.responses == 3
        timing, facilities, comments = results.questions
        assert timing.tally == [
            {"choice": "Morning", "count": 2, "percentage": 66.67},
            {"choice": "Evening", "count": 1, "percentage": 33.33},
        ]
        assert timing.answers_by_resident == {
            "lan": ["Morning"],
            admin.UNKNOWN_RESPONDENT: ["Evening"],
            "minh": ["Morning"],
        }
        assert facilities.tally == [
            {"choice": "Pool", "count": 2, "percentage": 66.67},
            {"choice": "Sauna", "count": 1, "percentage": 33.33},
        ]
        assert comments.tally == []
        assert comments.answers_by_resident == {}

    @pytest.mark.asyncio
    async def test_paginated_responses_followed(self, api, client):
        def responses(request):
            if request.url.params.get("page") == "2":
                return {"count": 3, "next": None, "previous": None, "results": SURVEY_RESPONSES[2:]}
            return {
                "count": 3,
                "next": f"{BASE_URL}/surveys/2/responses/?page=2",
                "previous": None,
                "results": SURVEY_RESPONSES[:2],
            }

        api.route("GET", "/surveys/2/", SURVEY)
        api.route("GET", "/surveys/2/responses/", responses)

        results = await admin.survey_results(client, 2)

        assert results.responses == 3
        assert results.questions[0].tally[0] == {"choice": "Morning", "count": 2, "percentage": 66.67}



class TestAccountsAndGuests:
    @pytest.mark.asyncio
    async def test_toggle_account_lock(self, api, client, admin_session):
        api.route("GET", "/users/", [{"id": 5, "username": "lan", "is_active": False}])
        api.route("PATCH", "/users/5/", {"id": 5, "is_active": True})
        view = open_view(client, admin_session, "accounts")
        await view.load()

        await view.run_action(admin.toggle_account_lock(view.find(5)))

        assert _form(api.calls("PATCH")[0]) == {"is_active": "true"}
        assert len(api.calls("GET", "/users/")) == 2

    @pytest.mark.asyncio
    async def test_approve_guest(self, api, client):
        api.route("PATCH", "/visitors/6/", {"id": 6, "is_approved": True})

        await admin.approve_guest(6)(client)

        assert api.json_body(api.calls("PATCH")[0]) == {"is_approved": True}


class TestLockerDetail:
    @pytest.mark.asyncio
    async def test_items_with_status_and_add(self, api, client, admin_session):
        api.route(
            "GET",
            "/lockeritems/4/",
            {"id": 4, "resident": 3, "items": [{"id": 1, "name_item": "Letter"}]},
        )
        api.route("GET", "/residents/3/lockeritem/item/1/", {"status": "waiting"})
        api.route("POST", "/lockeritems/4/item/", {"id": 2}, status=201)
        view = AggregationViewModel(client, admin_session, admin.locker_detail(4, resident_id=3))

        page = await view.load()
        assert page.items == [{"id": 1, "name_item": "Letter", "status": "waiting"}]

        await view.mutate(WriteOperation.CREATE, {"name_item": "Parcel", "status": "waiting"})
        assert _form(api.calls("POST")[0]) == {"name_item": "Parcel", "status": "waiting"}


class TestParkingCards:
    CARDS = [
        {"id": 1, "card_number": "N001", "resident": 3, "visitor": None},
        {"id": 2, "card_number": "N007", "resident": None, "visitor": 5},
        {"id": 3, "card_number": "X1", "resident": 4, "visitor": None},
    ]

    def test_next_card_number(self):
        assert admin.next_card_number(self.CARDS) == "N008"
        assert admin.next_card_number([]) == "N001"

    def test_card_eligible_visitors(self):
        visitors = [
            {"id": 1, "is_approved": True, "parking_card": None},
            {"id": 2, "is_approved": False, "parking_card": None},
            {"id": 3, "is_approved": True, "parking_card": 7},
        ]
        assert [v["id"] for v in admin.card_eligible_visitors(visitors)] == [1]

    def test_card_needs_one_owner(self):
        with pytest.raises(ValidationError):
            admin.issue_parking_card("car", "51A-12345")
        with pytest.raises(ValidationError):
            admin.issue_parking_card("car", "51A-12345", resident_id=1, visitor_id=2)

    @pytest.mark.asyncio
    async def test_issue_card(self, api, client):
        api.route("GET", "/parkingcards/", self.CARDS)
        api.route("POST", "/parkingcards/", {"id": 4}, status=201)

        await admin.issue_parking_card("motorbike", " 59X-888 ", visitor_id=5)(client)

        assert _form(api.calls("POST")[0]) == {
            "card_number": "N008",
            "vehicle_type": "motorbike",
            "license_plate": "59X-888",
            "resident": "",
            "visitor": "5",
        }

    @pytest.mark.asyncio
    async def test_visitor_cards_joined(self, api, client, admin_session):
        api.route("GET", "/parkingcards/", self.CARDS)
        api.route("GET", "/visitors/", [{"id": 5, "full_name": "Dung"}])
        api.route("GET", "/residents/", HOUSEHOLD)
        view = open_view(client, admin_session, "visitor-cards")

        page = await view.load()

        assert [(c["card_number"], c["visitor_name"]) for c in page.items] == [("N007", "Dung")]


class TestResidentScreens:
    @pytest.mark.asyncio
    async def test_lockers_waiting_first(self, api, resident_client, resident_session):
        api.route(
            "GET",
            "/residents/42/lockeritem/",
            {
                "id": 1,
                "items": [
                    {"id": 1, "name_item": "Letter"},
                    {"id": 2, "name_item": "Parcel"},
                    {"id": 3, "name_item": "Box"},
                ],
            },
        )
        api.route("GET", "/residents/42/lockeritem/item/1/", {"status": "received"})
        api.route("GET", "/residents/42/lockeritem/item/2/", {"status": "waiting"})
        view = open_view(resident_client, resident_session, "my-lockers")

        page = await view.load()

        assert [(i["name_item"], i["status"]) for i in page.items] == [
            ("Parcel", "waiting"),
            ("Letter", "received"),
            ("Box", "unknown"),
        ]

    @pytest.mark.asyncio
    async def test_register_visitor(self, api, resident_client, resident_session):
        api.route("GET", "/residents/42/visitors/", [])
        api.route("POST", "/residents/42/visitor/", {"id": 1}, status=201)
        view = open_view(resident_client, resident_session, "my-visitors")

        with pytest.raises(ValidationError) as exc_info:
            await view.mutate(WriteOperation.CREATE, {"full_name": "Dung"})
        assert set(exc_info.value.missing_fields) == {"identity_card", "phone"}

        await view.mutate(
            WriteOperation.CREATE,
            {"full_name": "Dung", "identity_card": "0123", "phone": "0909", "note": "x"},
        )
        assert api.json_body(api.calls("POST")[0]) == {
            "full_name": "Dung",
            "identity_card": "0123",
            "phone": "0909",
        }

    def test_survey_answers(self):
        survey = {
            "id": 2,
            "questions": [{"id": 10, "type": "single"}, {"id": 11, "type": "multiple"}],
        }

        with pytest.raises(ValidationError) as exc_info:
            resident.build_survey_answers(survey, {10: 1})
        assert exc_info.value.missing_fields == ["11"]

        assert resident.build_survey_answers(survey, {10: 1, 11: [3, 4]}) == [
            {"question": 10, "choices": [1]},
            {"question": 11, "choices": [3, 4]},
        ]

    @pytest.mark.asyncio
    async def test_submit_survey(self, api, resident_client, resident_session):
        api.route("POST", "/residents/42/surveys/2/responses/", {"id": 1}, status=201)
        survey = {"id": 2, "questions": [{"id": 10, "type": "single"}]}

        await resident.submit_survey(resident_session, survey, {10: 5})(resident_client)

        assert api.json_body(api.calls("POST")[0]) == {
            "survey": 2,
            "answers": [{"question": 10, "choices": [5]}],
        }

    def test_resident_views_need_resident(self):
        session = Session(token="t", role="resident")
        with pytest.raises(ValidationError):
            resident.my_lockers(session)
