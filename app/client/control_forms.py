import re
from dataclasses import dataclass, field
from typing import Dict

FORM_NAMES = {
    1: "Nebula Control",
    2: "Star Fleet",
    3: "Dark Matter",
    4: "Quantum Void",
    5: "Solar Dominion",
}
FORM_FIELDS = ("RC", "Rival", "AttackTime", "IntervalTime", "DefenceTime", "PlanetName")
TIME_FIELDS = {"AttackTime", "IntervalTime", "DefenceTime"}
TIME_FIELD_MAX_DIGITS = 5
ACTIONS = ("start", "stop", "update")

IDLE_LABELS = {"start": "Start", "stop": "Stop", "update": "Update"}
DONE_LABELS = {"start": "Running", "stop": "Stopped", "update": "Updated"}

_NON_DIGIT = re.compile(r"\D")


@dataclass
class ButtonState:
    text: str
    loading: bool = False
    active: bool = False


def _idle_buttons() -> Dict[str, ButtonState]:
    return {action: ButtonState(text=IDLE_LABELS[action]) for action in ACTIONS}


@dataclass
class ControlForm:
    """Field values, per-button state and the last error of one control tab."""

    number: int
    values: Dict[str, str] = field(default_factory=lambda: {name: "" for name in FORM_FIELDS})
    buttons: Dict[str, ButtonState] = field(default_factory=_idle_buttons)
    error: str = ""

    def __post_init__(self):
        if self.number not in FORM_NAMES:
            raise ValueError(f"Unknown form number {self.number}")

    @property
    def name(self) -> str:
        return FORM_NAMES[self.number]

    def set_field(self, name: str, value: str) -> str:
        if name not in FORM_FIELDS:
            raise KeyError(name)
        if name in TIME_FIELDS:
            value = _NON_DIGIT.sub("", value)[:TIME_FIELD_MAX_DIGITS]
        self.values[name] = value
        return value

    def payload(self) -> Dict[str, str]:
        # Keys carry the form number so all five tabs share one key space (RC1, RC2, ...)
        return {f"{name}{self.number}": value for name, value in self.values.items()}

    def begin(self, action: str) -> None:
        self.buttons[action].loading = True
        self.error = ""

    def succeed(self, action: str) -> None:
        self.buttons[action] = ButtonState(text=DONE_LABELS[action], active=True)
        if action == "start":
            self.buttons["stop"] = ButtonState(text=IDLE_LABELS["stop"])
        elif action == "stop":
            self.buttons["start"] = ButtonState(text=IDLE_LABELS["start"])

    def fail(self, action: str, message: str) -> None:
        self.error = f"Error: {message}"
        self.buttons[action] = ButtonState(text=IDLE_LABELS[action])

    def reset(self) -> None:
        self.buttons = _idle_buttons()
        self.error = ""


def build_forms() -> Dict[int, ControlForm]:
    return {number: ControlForm(number) for number in FORM_NAMES}
