"""
Batch manifest export.

One row per appointment moved by a maintenance batch, so the clinic can call
the affected patients. The CSV layout matches the file staff already work
with: a plain header line, then every value double-quoted.
"""

import csv
import io
from collections.abc import Iterable
from dataclasses import asdict, dataclass, fields
from typing import Any

MANIFEST_COLUMNS = (
    "id",
    "date",
    "time",
    "patient_first_name",
    "patient_last_name",
    "patient_phone",
    "doctor_first_name",
    "doctor_last_name",
)


@dataclass(frozen=True)
class ManifestRow:
    id: str
    date: str
    time: str
    patient_first_name: str = ""
    patient_last_name: str = ""
    patient_phone: str = ""
    doctor_first_name: str = ""
    doctor_last_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def build_rows(appointments: Iterable) -> list["ManifestRow"]:
    """
    Build manifest rows from appointments with ``patient`` and ``doctor`` loaded.

    The caller decides the order (the orchestrator sorts by date, start, id).
    """
    rows = []
    for appt in appointments:
        patient = appt.patient
        doctor = appt.doctor
        rows.append(
            ManifestRow(
                id=str(appt.id),
                date=appt.date.isoformat(),
                time=appt.start_time.strftime("%H:%M"),
                patient_first_name=(patient.first_name if patient else None) or "",
                patient_last_name=(patient.last_name if patient else None) or "",
                patient_phone=(patient.phone if patient else None) or "",
                doctor_first_name=(doctor.first_name if doctor else None) or "",
                doctor_last_name=(doctor.last_name if doctor else None) or "",
            )
        )
    return rows


def to_csv(rows: Iterable[ManifestRow]) -> str:
    """Render rows as CSV text (header + one line per row, no trailing newline)."""
    output = io.StringIO()
    writer = csv.writer(output, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for row in rows:
        writer.writerow([getattr(row, f.name) for f in fields(row)])

    header = ",".join(MANIFEST_COLUMNS)
    body = output.getvalue().removesuffix("\n")
    return f"{header}\n{body}" if body else header


def manifest_filename(batch_id: Any) -> str:
    return f"citas_mantenimiento_batch_{batch_id}.csv"
