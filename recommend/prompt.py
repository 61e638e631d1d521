# recommend/prompt.py
from dataclasses import dataclass
from typing import Dict, List, Optional

from models import UNKNOWN_CLASSIFICATION

INSTRUCTIONS = (
    "Generate an overall short and simple clinical interpretation of the following "
    "lab results from today's testing not more than 50 words:"
)

RESPONSE_FORMAT = """Format your response as:
1) Summary of all tests performed
2) Abnormal findings across all tests
3) Overall assessment and priority level

Use medical terminology. Be direct, specific, and precise. Consider the complete clinical picture from all tests performed on this date. Remember to be short enough for a doctor to review quickly."""


@dataclass
class LabLine:
    panel_name: str
    item_name: str
    value: str
    unit: str = ""
    classification: Optional[str] = None
    demographic: bool = False


def _status_text(line: LabLine) -> str:
    if line.classification is None or line.classification == UNKNOWN_CLASSIFICATION:
        return "Status is unknown"
    return f"Status: {line.classification}"


def _render_line(line: LabLine) -> str:
    value = f"{line.value} {line.unit}".strip()
    if line.demographic:
        return f"  - {line.item_name} = {value}"
    return f"  - {line.item_name} = {value} ({_status_text(line)})"


def build_prompt(patient_name: str, lines: List[LabLine]) -> str:
    """
    Deterministic prompt for one patient's results on one date.
    Lines keep their input order inside each panel; panels appear in
    first-seen order.
    """
    grouped: Dict[str, List[LabLine]] = {}
    for line in lines:
        grouped.setdefault(line.panel_name or "General Lab", []).append(line)

    description = ""
    for panel_name, panel_lines in grouped.items():
        description += f"\n{panel_name}:\n"
        description += "\n".join(_render_line(line) for line in panel_lines) + "\n"

    return f"{INSTRUCTIONS}\n\nPatient: {patient_name}\nLab Values:\n{description}\n{RESPONSE_FORMAT}".strip()
