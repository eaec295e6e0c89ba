import re

OR_SEPARATOR = " OR "

_APOSTROPHES = re.compile(r"[’']")
# Anything that is not a letter, digit or whitespace. \w also matches "_", so list it explicitly.
_NON_ALNUM = re.compile(r"[^\w\s]|_")
_SPACES = re.compile(r"\s+")


def normalize_lenient(value: str) -> str:
    text = str(value or "").lower()
    text = _APOSTROPHES.sub("", text)
    text = _NON_ALNUM.sub(" ", text)
    return _SPACES.sub(" ", text).strip()


def lenient_equals(expected: str, answer: str) -> bool:
    """True when the answer matches one of the ``" OR "`` variants of *expected*
    up to case, punctuation and spacing."""
    answer_norm = normalize_lenient(answer)
    if not answer_norm:
        return False
    for variant in str(expected or "").split(OR_SEPARATOR):
        if normalize_lenient(variant) == answer_norm:
            return True
    return False
