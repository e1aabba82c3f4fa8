"""Operating mode text from the 1019 status bits.

Primary mode: first set flag in OFF > Manual > Test > Auto, else Unknown.
Modifiers (AMF, Load Takeover, AMF Active) are independent and always listed
in that order: "Auto (AMF, Load Takeover)".
"""

from __future__ import annotations

from register_table import RegisterTable

UNKNOWN_MODE = "Unknown"

# (status role, label) in priority order
PRIMARY_MODES = (
    ("mode_off", "OFF"),
    ("mode_manual", "Manual"),
    ("mode_test", "Test"),
    ("mode_auto", "Auto"),
)

MODE_MODIFIERS = (
    ("mode_amf", "AMF"),
    ("mode_load_takeover", "Load Takeover"),
    ("mode_amf_active", "AMF Active"),
)


def _flag(status: dict[str, bool], table: RegisterTable, role: str) -> bool:
    key = table.role_key(role)
    return bool(key and status.get(key))


def synthesize_mode(status: dict[str, bool], table: RegisterTable) -> str:
    primary = next(
        (label for role, label in PRIMARY_MODES if _flag(status, table, role)),
        UNKNOWN_MODE,
    )
    modifiers = [label for role, label in MODE_MODIFIERS if _flag(status, table, role)]

    if modifiers:
        return f"{primary} ({', '.join(modifiers)})"
    return primary
