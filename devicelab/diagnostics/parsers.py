"""Parsers that interpret raw modem replies for step-sequence tests.

Each parser takes the reply text and returns a dict of extracted values, or
raises ``ValueError`` when the reply cannot be interpreted. A step using a
parser passes exactly when parsing succeeds.
"""
from __future__ import annotations

import re
from typing import Callable, Dict

ResponseParser = Callable[[str], Dict[str, object]]

REGISTRATION_STATES = {
    0: "not registered",
    1: "registered (home)",
    2: "searching",
    3: "denied",
    4: "unknown",
    5: "registered (roaming)",
}

_CSQ = re.compile(r"\+CSQ:\s*(\d+)\s*,\s*(\d+)")
_CREG = re.compile(r"\+C(?:E|G)?REG:\s*(?:\d+\s*,\s*)?(\d+)")
_COPS = re.compile(r'\+COPS:\s*\d+(?:\s*,\s*\d+\s*,\s*"([^"]*)")?')


def parse_signal_quality(text: str) -> Dict[str, object]:
    match = _CSQ.search(text)
    if not match:
        raise ValueError("no +CSQ reply")
    rssi, ber = int(match.group(1)), int(match.group(2))
    if rssi == 99 or rssi > 31:
        raise ValueError("signal strength not detectable")
    dbm = -113 + 2 * rssi
    if rssi >= 20:
        quality = "excellent"
    elif rssi >= 15:
        quality = "good"
    elif rssi >= 10:
        quality = "fair"
    else:
        quality = "poor"
    return {"rssi": rssi, "ber": ber, "dbm": dbm, "quality": quality}


def parse_registration(text: str) -> Dict[str, object]:
    match = _CREG.search(text)
    if not match:
        raise ValueError("no registration reply")
    state = int(match.group(1))
    if state not in (1, 5):
        raise ValueError(f"not registered ({REGISTRATION_STATES.get(state, state)})")
    return {"state": state, "description": REGISTRATION_STATES[state], "roaming": state == 5}


def parse_operator(text: str) -> Dict[str, object]:
    match = _COPS.search(text)
    if not match or not match.group(1):
        raise ValueError("no operator selected")
    return {"operator": match.group(1)}


def _digits(label: str, minimum: int, maximum: int) -> ResponseParser:
    pattern = re.compile(r"(\d{%d,%d})" % (minimum, maximum))

    def parse(text: str) -> Dict[str, object]:
        match = pattern.search(text)
        if not match:
            raise ValueError(f"no {label.upper()} in reply")
        return {label: match.group(1)}

    return parse


PARSERS: Dict[str, ResponseParser] = {
    "signalQuality": parse_signal_quality,
    "registration": parse_registration,
    "operator": parse_operator,
    "iccid": _digits("iccid", 18, 22),
    "imsi": _digits("imsi", 14, 15),
}


def get_parser(name: str) -> ResponseParser:
    try:
        return PARSERS[name]
    except KeyError:
        raise ValueError(f"Unknown response handler: {name}") from None
