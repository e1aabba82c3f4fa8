"""Register table — versioned device layout loaded from a JSON artifact.

Holds the measurement map, the alarm/status bitfield tables, the status roles
used for mode/run-cycle derivation and the coil command definitions.
Decode logic lives in services/; this package is data + validation only.
"""

from register_table.definitions import (
    BitDefinition,
    CommandDefinition,
    MeasurementField,
    RegisterTable,
    RegisterTableError,
    load_register_table,
    parse_register_table,
)

__all__ = [
    "BitDefinition",
    "CommandDefinition",
    "MeasurementField",
    "RegisterTable",
    "RegisterTableError",
    "load_register_table",
    "parse_register_table",
]
