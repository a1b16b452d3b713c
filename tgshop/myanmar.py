import re

import phonenumbers
from phonenumbers import NumberParseException

WHITESPACE_RE = re.compile(r"\s+")
LOCAL_PHONE_RE = re.compile(r"^09[0-9]{7,9}$")

# delivery is only offered to these cities
MYANMAR_CITIES = (
    "Yangon",
    "Mandalay",
    "Naypyidaw",
    "Bago",
    "Mawlamyine",
    "Pathein",
    "Meiktila",
    "Myitkyina",
    "Taunggyi",
    "Sittwe",
    "Lashio",
    "Pyay",
    "Hpa-An",
    "Magway",
    "Dawei",
)


def to_local(raw):
    """
    Bring a phone number to the local 09... form.
    +959... and 959... lose the country code, anything else gets the 09 prefix.
    """
    s = WHITESPACE_RE.sub("", raw or "")
    if s.startswith("+959"):
        return "09" + s[4:]
    if s.startswith("959"):
        return "09" + s[3:]
    if not s.startswith("09"):
        return "09" + s
    return s


def format_phone(phone):
    s = to_local(phone)
    if len(s) >= 11:
        return f"{s[:2]} {s[2:5]} {s[5:8]} {s[8:]}"
    if len(s) >= 8:
        return f"{s[:2]} {s[2:5]} {s[5:]}"
    return s


PHONE_REQUIRED = "Phone number is required"
PHONE_BAD_FORMAT = "Invalid Myanmar phone number format. Should be 09xxxxxxxx"
PHONE_NOT_ALLOCATED = "Invalid Myanmar phone number"


def validate_phone(raw):
    """
    Returns (formatted, error). A number must look like 09 + 7-9 digits and
    also be a valid Myanmar number per libphonenumber metadata.
    """
    if not (raw or "").strip():
        return "", PHONE_REQUIRED
    s = to_local(raw)
    if not LOCAL_PHONE_RE.match(s):
        return "", PHONE_BAD_FORMAT
    try:
        number = phonenumbers.parse(s, "MM")
    except NumberParseException:
        return "", PHONE_NOT_ALLOCATED
    if not phonenumbers.is_valid_number(number):
        return "", PHONE_NOT_ALLOCATED
    return format_phone(s), None


def normalize_phone(raw):
    """Formatted number ("09 XXX XXX XXX"), or "" when it is not a Myanmar mobile number."""
    return validate_phone(raw)[0]


def is_delivery_city(city):
    return city in MYANMAR_CITIES
