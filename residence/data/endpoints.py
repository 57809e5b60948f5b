"""REST endpoint paths of the building management API."""

from typing import Union

APARTMENTS = "/apartments/"
COMPLAINTS = "/complaints/"
INVOICES = "/invoices/"
LOCKER_ITEMS = "/lockeritems/"
PARKING_CARDS = "/parkingcards/"
PAYMENTS = "/payments/"
RESIDENTS = "/residents/"
SURVEYS = "/surveys/"
USERS = "/users/"
VISITORS = "/visitors/"

Id = Union[int, str]


def item(collection: str, resource_id: Id) -> str:
    """``/apartments/`` + 3 -> ``/apartments/3/``"""
    return f"{collection}{resource_id}/"


def sub_resource(collection: str, resource_id: Id, name: str) -> str:
    """``/apartments/`` + 3 + ``residents`` -> ``/apartments/3/residents/``"""
    return f"{collection}{resource_id}/{name.strip('/')}/"


def apartment_residents(apartment_id: Id) -> str:
    return sub_resource(APARTMENTS, apartment_id, "residents")


def complaint_responses(complaint_id: Id) -> str:
    return sub_resource(COMPLAINTS, complaint_id, "complaintresponses")


def resident_invoices(resident_id: Id) -> str:
    return sub_resource(RESIDENTS, resident_id, "invoices")


def resident_visitors(resident_id: Id) -> str:
    return sub_resource(RESIDENTS, resident_id, "visitors")


def resident_visitor(resident_id: Id, visitor_id: Id) -> str:
    return f"{resident_visitors(resident_id)}{visitor_id}/"


def resident_surveys(resident_id: Id) -> str:
    return sub_resource(RESIDENTS, resident_id, "surveys")


def resident_lockers(resident_id: Id) -> str:
    return sub_resource(RESIDENTS, resident_id, "lockeritem")


def locker_item_status(resident_id: Id, item_id: Id) -> str:
    return f"{resident_lockers(resident_id)}item/{item_id}/"


def payment_decision(payment_id: Id, decision: str) -> str:
    if decision not in ("approve", "reject"):
        raise ValueError(f"Unknown payment decision: {decision}")
    return sub_resource(PAYMENTS, payment_id, decision)


def visitor_registration(resident_id: Id) -> str:
    return sub_resource(RESIDENTS, resident_id, "visitor")


def survey_responses(resident_id: Id, survey_id: Id) -> str:
    return f"{resident_surveys(resident_id)}{survey_id}/responses/"


def locker(locker_id: Id) -> str:
    return item(LOCKER_ITEMS, locker_id)


def locker_items(locker_id: Id) -> str:
    return sub_resource(LOCKER_ITEMS, locker_id, "item")


def resident_parking_card(resident_id: Id) -> str:
    return sub_resource(RESIDENTS, resident_id, "parkingcard")


def survey_results(survey_id: Id) -> str:
    return sub_resource(SURVEYS, survey_id, "responses")
