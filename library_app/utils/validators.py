import re
from typing import Optional


class ISBNValidator:
    """ISBN-10 / ISBN-13 checksum validation."""

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
            # weighted sum 10..1 must be divisible by 11
            total = 0
            for i, ch in enumerate(s[:-1]):
                if not ch.isdigit():
                    return False
                total += (10 - i) * int(ch)
            check = s[-1]
            if check == "X":
                check_val = 10
            elif check.isdigit():
                check_val = int(check)
            else:
                return False
            return (total + check_val) % 11 == 0
        elif len(s) == 13 and s.isdigit():
            total = 0
            for i, ch in enumerate(s[:-1]):
                factor = 1 if i % 2 == 0 else 3
                total += factor * int(ch)
            check_val = (10 - (total % 10)) % 10
            return check_val == int(s[-1])
        return False


class ISSNValidator:
    """ISSN (8 characters, weights 8..2, mod 11 check digit)."""

    @staticmethod
    def normalize_issn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        s = re.sub(r"[^0-9Xx]", "", raw).upper()
        if len(s) == 8:
            return f"{s[:4]}-{s[4:]}"
        return s

    @staticmethod
    def is_valid_issn(issn: Optional[str]) -> bool:
        if not issn:
            return False
        s = re.sub(r"[^0-9Xx]", "", issn).upper()
        if len(s) != 8 or not s[:7].isdigit():
            return False
        total = sum((8 - i) * int(ch) for i, ch in enumerate(s[:7]))
        remainder = (11 - total % 11) % 11
        expected = "X" if remainder == 10 else str(remainder)
        return s[7] == expected


class TextValidator:
    """Basic checks and sanitization for free-text catalog fields."""

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        if title is None:
            return False
        t = title.strip()
        # a title needs at least one letter or digit
        return any(c.isalnum() for c in t)

    @staticmethod
    def validate_author(author: Optional[str]) -> bool:
        # must not be digits only
        if author is None:
            return False
        t = author.strip()
        if not t:
            return False
        return not t.isdigit()

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        if text is None:
            return ""
        # strip HTML tags and inline script handlers
        cleaned = re.sub(r"<[^>]*>", "", text)
        cleaned = re.sub(r"(?i)javascript:|onerror=|onload=", "", cleaned)
        return cleaned.strip()
