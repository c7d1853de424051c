import uuid

def gen_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def id_fragment(entity_id: str, length: int = 8) -> str:
    # tail of the hex part: "lst_<32 hex>" -> last `length` hex chars
    raw = entity_id.rsplit("_", 1)[-1].lower()
    cleaned = "".join(ch for ch in raw if ch.isalnum())
    return cleaned[-length:].rjust(length, "0")
