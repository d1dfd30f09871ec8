"""
Fuzzy matching of spreadsheet column headers to account-import fields.

Each (header, field) pair is scored from four signals: token overlap after
abbreviation expansion, the longest common substring, a coarse data-type
category and an abbreviation bonus. Exact and alias matches short-circuit the
weighted sum. ``match_fields`` then assigns headers greedily in two passes,
with email/phone columns fanned out into numbered slots in between.
"""

import logging
import re
from dataclasses import asdict, dataclass
from difflib import SequenceMatcher
from typing import Dict, Iterable, List, Optional, Sequence, Set

from rapidfuzz.distance import Levenshtein

logger = logging.getLogger(__name__)

FIRST_PASS_THRESHOLD = 0.6
SECOND_PASS_THRESHOLD = 0.3

WORD_WEIGHT = 0.4
SUBSTRING_WEIGHT = 0.3
SEMANTIC_WEIGHT = 0.1
ABBREVIATION_WEIGHT = 0.2

REQUIRED_ACCOUNT_FIELDS = ["account_number", "current_balance"]
OPTIONAL_ACCOUNT_FIELDS = [
    "original_account_number",
    "original_creditor",
    "original_balance",
    "charge_off_date",
    "date_opened",
    "last_payment_date",
    "last_payment_amount",
    "last_activity_date",
    "account_type",
    "account_status",
    "ssn",
    "first_name",
    "middle_name",
    "last_name",
    "dob",
    "address_line1",
    "address_line2",
    "city",
    "state",
    "zipcode",
    "email_primary",
    "phone_primary",
]
ACCOUNT_IMPORT_FIELDS = REQUIRED_ACCOUNT_FIELDS + OPTIONAL_ACCOUNT_FIELDS

# Known spellings of each account-import field. A header equal to one of these
# (ignoring case, punctuation and spacing) is treated as a near-exact match.
FIELD_ALIASES: Dict[str, List[str]] = {
    "account_number": [
        "account", "acct", "acnt", "account_num", "acct_num", "acct_no", "account_no",
        "loan_number", "loan_num", "debt_number", "debt_num", "reference", "ref",
        "case_number", "case_num", "current_account", "current_acct",
    ],
    "original_account_number": [
        "original_account", "orig_account", "original_acct", "orig_acct", "original_account_num",
        "orig_account_num", "original_loan_number", "original_loan_num", "original_reference",
        "original_ref",
    ],
    "original_creditor": [
        "originalcreditor", "originalcred", "orig_creditor", "creditor", "original_cred", "cred",
        "creditor_name", "original_lender", "lender", "issuing_bank",
    ],
    "original_balance": [
        "orig_balance", "original_bal", "orig_bal", "original_amount", "orig_amount",
        "principal_balance", "principal", "original_principal", "loan_amount", "debt_amount",
        "original_debt",
    ],
    "current_balance": [
        "curr_balance", "current_bal", "curr_bal", "balance", "bal", "amount", "amt",
        "outstanding_balance", "outstanding_bal", "remaining_balance", "remaining_bal",
        "current_amount", "debt_balance",
    ],
    "charge_off_date": [
        "chargeoff_date", "charge_off", "chargeoff", "co_date", "charge_off_dt", "chargeoff_dt",
        "charged_off_date", "charged_off", "default_date", "write_off_date",
    ],
    "date_opened": [
        "opened_date", "open_date", "account_opened", "opened", "open_dt", "origination_date",
        "start_date", "account_start_date",
    ],
    "last_payment_date": [
        "last_payment", "last_payment_dt", "last_pay_date", "last_pay_dt", "final_payment_date",
        "final_payment",
    ],
    "last_payment_amount": [
        "last_payment_amt", "last_pay_amount", "last_pay_amt", "final_payment_amount",
        "final_payment_amt",
    ],
    "last_activity_date": [
        "last_activity", "last_activity_dt", "last_transaction_date", "last_transaction",
        "activity_date", "last_worked", "last_work_date",
    ],
    "account_type": ["acct_type", "type", "account_category", "debt_type", "loan_type", "credit_type"],
    "account_status": ["acct_status", "status", "account_state", "debt_status", "collection_status"],
    "ssn": [
        "social_security", "social_security_number", "ss_number", "social", "tax_id", "taxid",
        "social_security_num", "ssn_number",
    ],
    "first_name": ["firstname", "first", "fname", "given_name", "debtor_first_name", "borrower_first_name"],
    "middle_name": ["middlename", "middle", "mname", "middle_initial", "mi"],
    "last_name": ["lastname", "last", "lname", "surname", "family_name", "debtor_last_name", "borrower_last_name"],
    "dob": ["date_of_birth", "birth_date", "birthdate", "birth_dt", "birthday", "debtor_dob"],
    "address_line1": ["address1", "address_1", "street_address", "street", "address", "home_address", "mailing_address"],
    "address_line2": ["address2", "address_2", "apt", "apartment", "unit", "suite"],
    "city": ["city_name", "town"],
    "state": ["state_code", "state_abbr", "province"],
    "zipcode": ["zip", "zip_code", "postal_code", "postcode"],
    "email_primary": ["primary_email", "email", "email_address", "email_addr", "e_mail"],
    "phone_primary": ["primary_phone", "phone", "phone_number", "phone_num", "tel", "telephone", "home_phone", "cell_phone", "mobile_phone"],
}

# Token-level abbreviations and synonyms applied before word comparison.
ABBREVIATIONS: Dict[str, List[str]] = {
    "acct": ["account"],
    "acnt": ["account"],
    "acc": ["account"],
    "num": ["number"],
    "no": ["number"],
    "nbr": ["number"],
    "amt": ["amount"],
    "bal": ["balance"],
    "orig": ["original"],
    "curr": ["current"],
    "prev": ["previous"],
    "addr": ["address"],
    "ph": ["phone"],
    "tel": ["phone"],
    "mobile": ["phone"],
    "cell": ["phone"],
    "em": ["email"],
    "ssn": ["social", "security"],
    "dob": ["date", "birth"],
    "bday": ["date", "birth"],
    "birthday": ["date", "birth"],
    "dt": ["date"],
    "pay": ["payment"],
    "pmt": ["payment"],
    "fname": ["first", "name"],
    "lname": ["last", "name"],
    "firstname": ["first", "name"],
    "lastname": ["last", "name"],
    "zip": ["zipcode"],
    "postal": ["zipcode"],
    "cred": ["creditor"],
    "chargeoff": ["charge", "off"],
    "co": ["charge", "off"],
    "coll": ["collection"],
}

SEMANTIC_PATTERNS = [
    ("date", re.compile(r"(date|dt|time|created|updated|opened|closed|due|expiry|expiration|start|end|begin|finish)", re.I)),
    ("number", re.compile(
        r"(amount|balance|bal|amt|sum|total|count|number|num|qty|quantity|price|cost|fee|charge|payment|paid|due|owed"
        r"|debt|loan|credit|debit|income|salary|score|rate|percent|pct|ratio|average|avg|mean|median|min|max)",
        re.I,
    )),
    ("phone", re.compile(r"(phone|tel|telephone|mobile|cell|fax)", re.I)),
    ("email", re.compile(r"(email|e_mail|mail|contact)", re.I)),
    ("ssn", re.compile(r"(ssn|social|tax|taxid)", re.I)),
    ("zip", re.compile(r"(zip|postal|postcode)", re.I)),
]

# Keyword families that earn a partial semantic score even when the
# category patterns above disagree.
SEMANTIC_FAMILIES = [
    ("date", "dob", "birth"),
    ("number", "num", "#"),
    ("amount", "balance", "amt", "bal"),
]

EMAIL_TOKENS = {"email", "em"}
PHONE_TOKENS = {"phone", "ph", "tel", "telephone", "mobile", "cell"}
ACTIVITY_MARKERS = ("work", "activity")


@dataclass
class MatchBreakdown:
    header: str
    field: str
    score: float
    exact: float = 0.0
    word_overlap: float = 0.0
    substring: float = 0.0
    semantic: float = 0.0
    abbreviation: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


def normalize_name(name: str) -> str:
    """
    Lowercase, turn every non-alphanumeric character into a space, collapse runs.

    Examples:
        "Acct #"          -> "acct"
        "current_balance" -> "current balance"
        "E-Mail  Address" -> "e mail address"
    """
    normalized = re.sub(r"[^a-z0-9\s]", " ", (name or "").lower())
    return re.sub(r"\s+", " ", normalized).strip()


def _compact(name: str) -> str:
    return normalize_name(name).replace(" ", "")


def expand_tokens(tokens: Iterable[str]) -> List[str]:
    expanded: List[str] = []
    for token in tokens:
        expanded.extend(ABBREVIATIONS.get(token, [token]))
    return expanded


def exact_score(header: str, field: str) -> float:
    normalized_header = normalize_name(header)
    normalized_field = normalize_name(field)
    if not normalized_header:
        return 0.0
    if normalized_header == normalized_field:
        return 1.0

    compact_header = normalized_header.replace(" ", "")
    if compact_header == normalized_field.replace(" ", ""):
        return 0.95
    if compact_header in {_compact(alias) for alias in FIELD_ALIASES.get(field, [])}:
        return 0.95
    return 0.0


def word_overlap_score(header: str, field: str) -> float:
    header_words = expand_tokens(normalize_name(header).split())
    field_words = expand_tokens(normalize_name(field).split())
    total = max(len(header_words), len(field_words))
    if total == 0:
        return 0.0

    matched = 0.0
    for header_word in header_words:
        for field_word in field_words:
            if header_word == field_word:
                matched += 1.0
                break
            if header_word in field_word or field_word in header_word:
                matched += 0.8
                break
            longest = max(len(header_word), len(field_word))
            if longest and Levenshtein.distance(header_word, field_word) / longest < 0.3:
                matched += 0.6
                break
    return matched / total


def substring_score(header: str, field: str) -> float:
    """Longest common substring length over the longer space-stripped name."""
    a = _compact(header)
    b = _compact(field)
    longer = max(len(a), len(b))
    if longer == 0:
        return 1.0
    match = SequenceMatcher(None, a, b, autojunk=False).find_longest_match(0, len(a), 0, len(b))
    return match.size / longer


def data_type_category(name: str) -> Optional[str]:
    for category, pattern in SEMANTIC_PATTERNS:
        if pattern.search(name):
            return category
    return None


def semantic_score(header: str, field: str) -> float:
    header_type = data_type_category(header)
    if header_type and header_type == data_type_category(field):
        return 0.8

    header_lower = header.lower()
    field_lower = field.lower()
    for family in SEMANTIC_FAMILIES:
        if any(k in header_lower for k in family) and any(k in field_lower for k in family):
            return 0.7
    return 0.0


def _is_abbreviation_of(short: str, long: str) -> bool:
    return long in ABBREVIATIONS.get(short, []) or short in ABBREVIATIONS.get(long, [])


def abbreviation_score(header: str, field: str) -> float:
    bonus = 0.0
    for header_word in normalize_name(header).split():
        for field_word in normalize_name(field).split():
            if header_word == field_word:
                bonus += 0.3
            elif _is_abbreviation_of(header_word, field_word):
                bonus += 0.25
    return min(bonus, 1.0)


def explain_match(header: str, field: str) -> MatchBreakdown:
    exact = exact_score(header, field)
    if exact:
        return MatchBreakdown(header=header, field=field, score=exact, exact=exact)

    breakdown = MatchBreakdown(
        header=header,
        field=field,
        score=0.0,
        word_overlap=word_overlap_score(header, field),
        substring=substring_score(header, field),
        semantic=semantic_score(header, field),
        abbreviation=abbreviation_score(header, field),
    )
    combined = (
        breakdown.word_overlap * WORD_WEIGHT
        + breakdown.substring * SUBSTRING_WEIGHT
        + breakdown.semantic * SEMANTIC_WEIGHT
        + breakdown.abbreviation * ABBREVIATION_WEIGHT
    )
    breakdown.score = min(combined, 1.0)
    return breakdown


def score_field(header: str, field: str) -> float:
    return explain_match(header, field).score


def is_email_header(header: str) -> bool:
    normalized = normalize_name(header)
    if "e mail" in normalized:
        return True
    return any(token in EMAIL_TOKENS or token.startswith("email") for token in normalized.split())


def is_phone_header(header: str) -> bool:
    return any(
        token in PHONE_TOKENS or token.startswith(("phone", "mobile", "cell"))
        for token in normalize_name(header).split()
    )


def _best_header(field: str, headers: Sequence[str], used: Set[str], threshold: float) -> Optional[str]:
    best_header = None
    best_score = 0.0
    for header in headers:
        if header in used:
            continue
        score = score_field(header, field)
        if score > best_score and score >= threshold:
            best_header = header
            best_score = score
    if best_header is not None:
        logger.debug(f"Matched '{field}' -> '{best_header}' (score: {best_score:.2f})")
    return best_header


def _slot_name(base: str, index: int) -> str:
    return base if index == 0 else f"{base}_{index + 1}"


def match_fields(headers: Sequence[str], target_fields: Sequence[str]) -> Dict[str, str]:
    """
    Assign source headers to target fields.

    Fields are visited in ``target_fields`` order and headers in ``headers``
    order; the first field to claim a header keeps it. Each header is mapped
    at most once.

    Returns:
        Mapping of target field -> source header for every field that matched.
    """
    mapping: Dict[str, str] = {}
    used: Set[str] = set()

    email_fields = [f for f in target_fields if "email" in f]
    phone_fields = [f for f in target_fields if "phone" in f]
    other_fields = [f for f in target_fields if "email" not in f and "phone" not in f]

    for field in other_fields:
        header = _best_header(field, headers, used, FIRST_PASS_THRESHOLD)
        if header is not None:
            mapping[field] = header
            used.add(header)

    if email_fields:
        email_headers = [h for h in headers if h not in used and is_email_header(h)]
        for index, header in enumerate(email_headers):
            mapping[_slot_name("email_primary", index)] = header
            used.add(header)

    if phone_fields:
        phone_headers = [h for h in headers if h not in used and is_phone_header(h)]
        for index, header in enumerate(phone_headers):
            mapping[_slot_name("phone_primary", index)] = header
            used.add(header)

    if "last_activity_date" in target_fields and "last_activity_date" not in mapping:
        for header in headers:
            if header not in used and any(marker in header.lower() for marker in ACTIVITY_MARKERS):
                mapping["last_activity_date"] = header
                used.add(header)
                logger.debug(f"Matched 'last_activity_date' -> '{header}' by activity keyword")
                break

    for field in other_fields:
        if field in mapping:
            continue
        header = _best_header(field, headers, used, SECOND_PASS_THRESHOLD)
        if header is not None:
            mapping[field] = header
            used.add(header)

    unmatched = [f for f in target_fields if f not in mapping and "email" not in f and "phone" not in f]
    logger.info(f"Auto-matched {len(mapping)} field(s) from {len(headers)} header(s); unmatched: {unmatched}")
    return mapping


def score_mapping(mapping: Dict[str, str]) -> Dict[str, float]:
    """Per-field score of an existing mapping (slot fields score against their base name)."""
    scores: Dict[str, float] = {}
    for field, header in mapping.items():
        if not header:
            continue
        base = re.sub(r"_\d+$", "", field)
        scores[field] = round(score_field(header, base), 4)
    return scores
