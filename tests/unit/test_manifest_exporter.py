"""Unit tests for batch manifest rows and CSV rendering."""

from datetime import date, time
from types import SimpleNamespace
from uuid import UUID

from scheduling.services.manifest_exporter import (
    MANIFEST_COLUMNS,
    ManifestRow,
    build_rows,
    manifest_filename,
    to_csv,
)

APPT_ID = UUID("6f1c2d3e-0000-4000-8000-000000000001")


def make_appointment(patient=None, doctor=None):
    return SimpleNamespace(
        id=APPT_ID,
        date=date(2026, 3, 9),
        start_time=time(9, 5),
        patient=patient,
        doctor=doctor,
    )


class TestBuildRows:
    def test_formats_date_and_time(self):
        patient = SimpleNamespace(first_name="Ana", last_name="Pérez", phone="+593991234567")
        doctor = SimpleNamespace(first_name="Luis", last_name="Molina")

        [row] = build_rows([make_appointment(patient, doctor)])

        assert row == ManifestRow(
            id=str(APPT_ID),
            date="2026-03-09",
            time="09:05",
            patient_first_name="Ana",
            patient_last_name="Pérez",
            patient_phone="+593991234567",
            doctor_first_name="Luis",
            doctor_last_name="Molina",
        )

    def test_missing_values_are_empty(self):
        patient = SimpleNamespace(first_name="Ana", last_name=None, phone=None)

        [row] = build_rows([make_appointment(patient, None)])

        assert row.patient_last_name == ""
        assert row.patient_phone == ""
        assert row.doctor_first_name == ""


class TestToCsv:
    HEADER = (
        "id,date,time,patient_first_name,patient_last_name,"
        "patient_phone,doctor_first_name,doctor_last_name"
    )

    def test_header_only_when_empty(self):
        assert to_csv([]) == self.HEADER

    def test_header_matches_columns(self):
        assert self.HEADER == ",".join(MANIFEST_COLUMNS)

    def test_values_quoted_and_quotes_doubled(self):
        row = ManifestRow(
            id="a1",
            date="2026-03-09",
            time="09:05",
            patient_first_name='Ana "Anita"',
            patient_last_name="Pérez, Loor",
        )

        lines = to_csv([row]).split("\n")

        assert lines[0] == self.HEADER
        assert lines[1] == (
            '"a1","2026-03-09","09:05","Ana ""Anita""","Pérez, Loor","","",""'
        )

    def test_no_trailing_newline(self):
        rows = [ManifestRow(id=str(i), date="2026-03-09", time="10:00") for i in range(3)]

        text = to_csv(rows)

        assert not text.endswith("\n")
        assert len(text.split("\n")) == 4


def test_manifest_filename():
    assert manifest_filename(APPT_ID) == f"citas_mantenimiento_batch_{APPT_ID}.csv"
