"""
Address schemas

AddressInput carries the structural rule set. Field order matters:
country_code is validated before postal_code so the postal pattern can
depend on it.
"""
import re
from datetime import datetime
from typing import Annotated, Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, ValidationInfo, field_validator

from storefront.models.address import AddressType

# ISO 3166-1 alpha-2 plus XK (Kosovo)
COUNTRY_CODES = frozenset("""
AF AX AL DZ AS AD AO AI AQ AG AR AM AW AU AT AZ BS BH BD BB BY BE BZ BJ BM BT BO BQ BA BW BV BR
IO BN BG BF BI KH CM CA CV KY CF TD CL CN CX CC CO KM CG CD CK CR CI HR CU CW CY CZ DK DJ DM DO
EC EG SV GQ ER EE SZ ET FK FO FJ FI FR GF PF TF GA GM GE DE GH GI GR GL GD GP GU GT GG GN GW GY
HT HM VA HN HK HU IS IN ID IR IQ IE IM IL IT JM JP JE JO KZ KE KI KP KR KW KG LA LV LB LS LR LY
LI LT LU MO MG MW MY MV ML MT MH MQ MR MU YT MX FM MD MC MN ME MS MA MZ MM NA NR NP NL NC NZ NI
NE NG NU NF MK MP NO OM PK PW PS PA PG PY PE PH PN PL PT PR QA RE RO RU RW BL SH KN LC MF PM VC
WS SM ST SA SN RS SC SL SG SX SK SI SB SO ZA GS SS ES LK SD SR SJ SE CH SY TW TJ TZ TH TL TG TK
TO TT TN TR TM TC TV UG UA AE GB US UM UY UZ VU VE VN VG VI WF EH YE ZM ZW XK
""".split())

POSTAL_PATTERNS: Dict[str, re.Pattern] = {
    "US": re.compile(r"^\d{5}(-\d{4})?$"),
    "CA": re.compile(r"^[A-Z]\d[A-Z][ -]?\d[A-Z]\d$"),
    "GB": re.compile(r"^[A-Z]{1,2}\d[A-Z\d]? ?\d[A-Z]{2}$"),
    "AU": re.compile(r"^\d{4}$"),
    "DE": re.compile(r"^\d{5}$"),
    "FR": re.compile(r"^\d{5}$"),
}

PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")
PHONE_SEPARATORS = re.compile(r"[\s\-().]")


def is_known_country(code: str) -> bool:
    return code in COUNTRY_CODES


def postal_code_error(country_code: str, postal_code: str) -> Optional[str]:
    """Message when the postal code does not fit the country's format."""
    pattern = POSTAL_PATTERNS.get(country_code)
    if pattern is None or pattern.match(postal_code.upper()):
        return None
    return f"Invalid postal code format for {country_code}"


def normalize_phone(phone: str) -> str:
    return PHONE_SEPARATORS.sub("", phone)


def is_valid_phone(phone: str) -> bool:
    return bool(PHONE_PATTERN.match(normalize_phone(phone)))


def _trimmed(min_length: int, max_length: int):
    return Annotated[str, StringConstraints(strip_whitespace=True, min_length=min_length, max_length=max_length)]


class AddressInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    first_name: _trimmed(1, 50)
    last_name: _trimmed(1, 50)
    company: Optional[_trimmed(0, 100)] = None
    address_line_1: _trimmed(3, 120)
    address_line_2: Optional[_trimmed(0, 120)] = None
    city: _trimmed(1, 80)
    state_province: _trimmed(2, 80)
    country_code: str
    postal_code: _trimmed(3, 20)
    phone: Optional[str] = None

    @field_validator("country_code", mode="before")
    @classmethod
    def normalize_country(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("country_code")
    @classmethod
    def known_country(cls, v: str) -> str:
        if not is_known_country(v):
            raise ValueError("Country must be an ISO-3166-1 alpha-2 code")
        return v

    @field_validator("postal_code")
    @classmethod
    def postal_matches_country(cls, v: str, info: ValidationInfo) -> str:
        country = info.data.get("country_code")
        if country:
            error = postal_code_error(country, v)
            if error:
                raise ValueError(error)
            if country in ("CA", "GB"):
                v = v.upper()
        return v

    @field_validator("company", "address_line_2")
    @classmethod
    def blank_to_none(cls, v):
        return v or None

    @field_validator("phone", mode="before")
    @classmethod
    def phone_format(cls, v):
        if v is None:
            return None
        if not isinstance(v, str):
            raise ValueError("Phone must be a string")
        v = v.strip()
        if not v:
            return None
        if not is_valid_phone(v):
            raise ValueError("Invalid phone number format")
        return normalize_phone(v)


class AddressCreate(AddressInput):
    address_type: AddressType = AddressType.SHIPPING
    is_default: bool = False


class AddressUpdate(BaseModel):
    """Partial update; merged onto the stored address and revalidated in full."""
    model_config = ConfigDict(extra="ignore")

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    address_line_1: Optional[str] = None
    address_line_2: Optional[str] = None
    city: Optional[str] = None
    state_province: Optional[str] = None
    country_code: Optional[str] = None
    postal_code: Optional[str] = None
    phone: Optional[str] = None
    address_type: Optional[AddressType] = None
    is_default: Optional[bool] = None


class AddressResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    address_type: AddressType
    first_name: str
    last_name: str
    company: Optional[str] = None
    address_line_1: str
    address_line_2: Optional[str] = None
    city: str
    state_province: str
    postal_code: str
    country_code: str
    phone: Optional[str] = None
    is_default: bool
    created_at: Optional[datetime] = None


class AddressCheckRequest(BaseModel):
    address: Dict[str, Any] = Field(default_factory=dict)


class AddressCheckResponse(BaseModel):
    is_valid: bool
    errors: Dict[str, list] = Field(default_factory=dict)
    address: Optional[AddressInput] = None
