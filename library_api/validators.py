import re
from typing import Optional


class ISBNValidator:
    """ISBN-10 / ISBN-13 normalization and checksum validation."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        s = re.sub(r"[^0-9Xx]", "", raw)
        return s.upper()

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        if not isbn:
            return False
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            # weighted 1..10 checksum, 'X' stands for 10 in the last position
            total = 0
            for i, ch in enumerate(s[:-1], 1):
                if not ch.isdigit():
                    return False
                total += i * int(ch)
            check = s[-1]
            if check == "X":
                check_val = 10
            elif check.isdigit():
                check_val = int(check)
            else:
                return False
            return (total + 10 * check_val) % 11 == 0
        elif len(s) == 13 and s.isdigit():
            total = 0
            for i, ch in enumerate(s[:-1]):
                factor = 1 if i % 2 == 0 else 3
                total += factor * int(ch)
            check_val = (10 - (total % 10)) % 10
            return check_val == int(s[-1])
        return False


class TextValidator:
    """Small checks for names and phone numbers; emails are validated by the pydantic schemas."""

    _PHONE_RE = re.compile(r"^\+?[0-9 ()\-]{6,20}$")

    @staticmethod
    def validate_name(text: Optional[str]) -> bool:
        if text is None:
            return False
        t = text.strip()
        if not t:
            return False
        return any(c.isalpha() for c in t)

    @staticmethod
    def validate_phone(phone: Optional[str]) -> bool:
        return bool(phone) and TextValidator._PHONE_RE.match(phone.strip()) is not None
