import re
from typing import Optional

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")


class ISBNValidator:
    """ISBN-10 and ISBN-13 normalization and checksum validation."""

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
            # weighted 1..10 sum, 'X' only as the check digit
            if not s[:9].isdigit():
                return False
            total = sum(i * int(ch) for i, ch in enumerate(s[:9], 1))
            check = s[9]
            check_val = 10 if check == "X" else int(check)
            return (total + 10 * check_val) % 11 == 0
        if len(s) == 13 and s.isdigit():
            total = sum(int(ch) * (1 if i % 2 == 0 else 3) for i, ch in enumerate(s[:12]))
            return (10 - total % 10) % 10 == int(s[12])
        return False


class TextValidator:
    """Basic text validations shared by request models and services."""

    @staticmethod
    def validate_name(text: Optional[str], min_length: int = 2) -> bool:
        if text is None:
            return False
        t = text.strip()
        if len(t) < min_length:
            return False
        # reject purely numeric names
        return any(c.isalpha() for c in t)

    @staticmethod
    def validate_email(email: Optional[str]) -> bool:
        if email is None:
            return False
        return bool(_EMAIL_RE.match(email.strip()))

    @staticmethod
    def normalize_email(email: str) -> str:
        return email.strip().lower()

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        if text is None:
            return ""
        # strip HTML tags and collapse whitespace
        cleaned = re.sub(r"<[^>]*>", "", text)
        return re.sub(r"\s+", " ", cleaned).strip()
