"""Shared fixtures: an app bound to a temporary user data folder."""

import uuid

import pytest
from docx import Document

import rent_manager


@pytest.fixture
def opened():
    """Paths handed to the host viewer during a test."""
    return []


@pytest.fixture
def quits():
    return []


@pytest.fixture
def app(tmp_path, opened, quits):
    app = rent_manager.create_app(
        user_data_path=str(tmp_path / "userdata"),
        opener=opened.append,
        on_quit=quits.append,
        run_sweep=False,
    )
    app.config["TESTING"] = True
    yield app
    app.extensions["rent_manager"].close()


@pytest.fixture
def ctx(app):
    return app.extensions["rent_manager"]


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def sample_data():
    return {
        "properties": [
            {"id": "prop-1", "address": "12 Herzl St, Haifa", "property_type": "Apartment"},
        ],
        "tenants": [
            {
                "id": "tenant-1",
                "name": "Dana Levi",
                "id_number": "123456789",
                "phone": "050-1234567",
                "address": "4 Allenby St, Tel Aviv",
                "property_id": "prop-1",
                "monthly_rent": 4500,
                "deposit": 9000.0,
                "rent_due_day": 1,
                "contract_start_date": "2026-01-01",
                "contract_end_date": "2026-12-31",
                "is_active": True,
                "contract_template_id": None,
            },
        ],
        "events": [{"id": "ev-1", "tenant_id": "tenant-1", "title": "Boiler repair"}],
        "expenses": [{"id": "ex-1", "property_id": "prop-1", "amount": 350}],
        "payments": [{"id": "pay-1", "tenant_id": "tenant-1", "amount": 4500, "date": "2026-02-01"}],
    }


@pytest.fixture
def make_template(ctx):
    """Write a DOCX template into the document store and return its file id."""

    def _make(lines, file_id=None):
        file_id = file_id or f"{uuid.uuid4()}.docx"
        doc = Document()
        for line in lines:
            doc.add_paragraph(line)
        doc.save(f"{ctx.documents_path}/{file_id}")
        return file_id

    return _make


def docx_paragraphs(path_or_stream):
    return [p.text for p in Document(path_or_stream).paragraphs]


@pytest.fixture
def read_docx():
    return docx_paragraphs
