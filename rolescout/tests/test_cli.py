from __future__ import annotations

import json

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from typer.testing import CliRunner

from rolescout.cli import app
from rolescout.models import Base

WS = "ws-1"

runner = CliRunner()


@pytest.fixture()
def db_url(tmp_path, crm_factory):
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    eng = create_engine(url)
    Base.metadata.create_all(eng)
    with sessionmaker(bind=eng, expire_on_commit=False)() as session:
        crm = crm_factory(session)
        crm.deal("d1", custom_fields={"Champion__c": "jane@acme.com"})
        crm.contact("jane", "Jane", "Doe", email="jane@acme.com", title="VP Engineering")
    eng.dispose()
    return url


def _invoke(db_url, *args):
    return runner.invoke(app, ["--json", "--db-url", db_url, *args])


def test_resolve_outputs_result_json(db_url):
    result = _invoke(db_url, "resolve", WS)
    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["stage_counts"]["crm_deal_field"] == 1
    assert payload["deals_with_champion"] == 1
    assert payload["total_deals"] == 1


def test_resolve_report(db_url):
    result = _invoke(db_url, "resolve", WS, "--report", "--concurrency", "2")
    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["report"].startswith("# Contact Role Resolution Report")
    assert payload["result"]["contacts_resolved"]["total"] == 1


def test_resolve_renders_tables(db_url):
    result = runner.invoke(app, ["--db-url", db_url, "resolve", WS])
    assert result.exit_code == 0, result.output
    assert "deals_with_champion" in result.output


def test_deal_contacts_after_resolve(db_url):
    _invoke(db_url, "resolve", WS)
    result = _invoke(db_url, "deal-contacts", WS, "d1")
    assert result.exit_code == 0, result.output
    [contact] = json.loads(result.stdout)
    assert contact["name"] == "Jane Doe"
    assert contact["buying_role"] == "champion"
    assert contact["role_confidence"] == 0.90


def test_deal_contacts_unknown_deal(db_url):
    result = _invoke(db_url, "deal-contacts", WS, "missing")
    assert result.exit_code != 0


def test_stats_without_resolution(db_url):
    result = _invoke(db_url, "stats", WS)
    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["total_deals"] == 1
    assert payload["deals_with_no_contacts"] == 1


def test_normalize_labels():
    result = runner.invoke(app, ["--json", "normalize", "Budget Holder", "Office Plant"])
    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout) == {"Budget Holder": "economic_buyer", "Office Plant": "unknown"}


def test_mappings_set_and_show(db_url, tmp_path):
    result = _invoke(db_url, "mappings", "set", WS, "Sponsor__c=executive_sponsor")
    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["custom"] == {"Sponsor__c": "executive_sponsor"}

    mapping_file = tmp_path / "mappings.yaml"
    mapping_file.write_text("role_field_mappings:\n  Coach__c: coach\n", encoding="utf-8")
    result = _invoke(db_url, "mappings", "set", WS, "--file", str(mapping_file), "EB__c=economic_buyer")
    assert result.exit_code == 0, result.output

    result = _invoke(db_url, "mappings", "show", WS)
    payload = json.loads(result.stdout)
    assert payload["custom"] == {"Coach__c": "coach", "EB__c": "economic_buyer"}
    assert "Champion__c" in payload["built_in"]["champion"]


def test_mappings_set_rejects_bad_role(db_url):
    result = _invoke(db_url, "mappings", "set", WS, "Sponsor__c=hero")
    assert result.exit_code != 0
    result = _invoke(db_url, "mappings", "set", WS, "no-equals-sign")
    assert result.exit_code != 0
