from datetime import datetime

from bson import ObjectId


def serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(v) for v in value]
    return value


def serialize_doc(doc: dict) -> dict:
    if not doc:
        return doc

    doc = serialize_value(dict(doc))
    if "_id" in doc:
        doc["id"] = doc.pop("_id")
    return doc


def serialize_docs(docs):
    return [serialize_doc(d) for d in docs]


def serialize_order(order: dict) -> dict:
    data = serialize_doc(order)
    data.pop("version", None)
    return data


def serialize_payout(payout: dict) -> dict:
    data = serialize_doc(payout)
    data.pop("version", None)

    # never echo the encrypted account number back
    details = data.get("payment_details") or {}
    details.pop("account_number_encrypted", None)
    return data
