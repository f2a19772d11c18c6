import sqlite3

LINEAR_FT = "linear_ft"
ACRES = "acres"
TREE_COUNT = "tree_count"

class UnitTypeCatalog:
    """Code -> measurement kind lookup; each code measures exactly one quantity."""

    def __init__(self, measurements: dict[str, str]):
        self.measurements = dict(measurements)

    @classmethod
    def from_mapping(cls, mapping: dict[str, str]) -> "UnitTypeCatalog":
        return cls(mapping)

    @classmethod
    def load(cls, conn: sqlite3.Connection) -> "UnitTypeCatalog":
        rows = conn.execute("SELECT code, measurement_type FROM unit_types").fetchall()
        return cls({r[0]: r[1] for r in rows})

    def codes_for(self, measurement_type: str) -> set[str]:
        return {code for code, kind in self.measurements.items() if kind == measurement_type}
