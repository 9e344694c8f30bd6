from bson import ObjectId
from hashids import Hashids
import os

# Short, shareable slugs for report links sent in emails and SMS
HASHIDS_SALT = os.getenv('HASHIDS_SALT', 'pataid-default-salt')
HASHIDS_MIN_LENGTH = int(os.getenv('HASHIDS_MIN_LENGTH', 10))
HASHIDS_ALPHABET = os.getenv(
    'HASHIDS_ALPHABET',
    'abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789'
)

hashids = Hashids(salt=HASHIDS_SALT, min_length=HASHIDS_MIN_LENGTH, alphabet=HASHIDS_ALPHABET)


def encode_object_id(obj_id) -> str:
    """Encode a Mongo ObjectId into a short slug."""
    return hashids.encode(int(str(obj_id), 16))


def decode_slug(slug: str) -> str | None:
    """Decode a slug back into an ObjectId hex string."""
    decoded = hashids.decode(slug)
    if not decoded:
        return None
    return format(decoded[0], 'x').zfill(24)


def resolve_object_id(ref) -> ObjectId | None:
    """Accept either a 24-char ObjectId hex string or a report slug."""
    if isinstance(ref, ObjectId):
        return ref
    if not ref:
        return None

    ref = str(ref)
    if ObjectId.is_valid(ref):
        return ObjectId(ref)

    hex_id = decode_slug(ref)
    if hex_id and ObjectId.is_valid(hex_id):
        return ObjectId(hex_id)
    return None
