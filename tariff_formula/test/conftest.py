import json
from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from tariff_formula.models import ScheduleEntry

PEANUT_FOOTNOTES = json.dumps(
    [
        {"columns": ["desc"], "value": "See 9904.12.01-9904.12.19.", "type": "endnote"},
        {"columns": ["general"], "value": "See 9903.88.15.", "type": "endnote"},
    ]
)


class FakeProvider:
    """Scripted provider: returns (or raises) the queued responses in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def complete(self, prompt, schema, *, timeout=None):
        self.calls.append({"prompt": prompt, "schema": schema["name"], "timeout": timeout})
        if not self.responses:
            raise AssertionError("unexpected provider call")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, str):
            return response
        return json.dumps(response)


@pytest.fixture
def make_provider():
    return FakeProvider


@pytest.fixture
def chapter99_entries():
    return [
        ScheduleEntry(
            hts_number="9903.88.15",
            chapter="99",
            description=(
                "Except as provided in headings 9903.88.39, 9903.88.42, articles the product of China, "
                "as provided for in U.S. note 20(r) to this subchapter"
            ),
            general_rate="The duty provided in the applicable subheading + 7.5%",
        ),
        ScheduleEntry(
            hts_number="9903.88.39",
            chapter="99",
            description="Articles the product of China, as provided for in U.S. note 20(vvv)",
            general_rate="The duty provided in the applicable subheading",
        ),
        ScheduleEntry(
            hts_number="9903.01.25",
            chapter="99",
            description="Articles the product of Russia or Belarus",
            general="+25%",
        ),
    ]


@pytest.fixture
def peanut_entry():
    return ScheduleEntry(
        hts_number="1202.41.80",
        chapter="12",
        description="Peanuts, in shell, other",
        unit_of_quantity="kg",
        general_rate="163.8%",
        rate_formula="value * 1.638",
        footnotes=PEANUT_FOOTNOTES,
    )
