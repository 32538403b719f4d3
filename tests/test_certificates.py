"""Tests for certificate refresh and inspection."""
from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from conftest import FakeEngine
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from unmsctl.certificates import (
    CertificateInspector,
    CertificateRefresher,
    CertificateStrategy,
    select_strategy,
)
from unmsctl.conf_store import ConfigStore
from unmsctl.errors import NotFoundError, ParseError, PreconditionError
from unmsctl.settings import SettingsBlobStore, SettingsDocument
from unmsctl.stack import RuntimeStateProbe

NOW = datetime(2030, 1, 1, tzinfo=UTC)


def _create_self_signed_cert(
    path: Path,
    *,
    common_name: str = "unms.example.com",
    valid_to: datetime = NOW + timedelta(days=30),
) -> Path:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(valid_to - timedelta(days=90))
        .not_valid_after(valid_to)
        .sign(key, hashes.SHA256())
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    return path


def _refresher(
    engine: FakeEngine,
    tmp_path: Path,
    *,
    settings: dict[str, object],
    ssl_cert: str | None = "",
) -> CertificateRefresher:
    engine.redis["nms:nms"] = json.dumps(settings)
    conf = tmp_path / "unms.conf"
    conf.write_text(
        "CLUSTER_SIZE=auto\n" + ("" if ssl_cert is None else f"SSL_CERT='{ssl_cert}'\n"),
        encoding="utf-8",
    )
    probe = RuntimeStateProbe(engine)
    return CertificateRefresher(
        probe,
        SettingsBlobStore(engine),
        ConfigStore(conf, tmp_path / "docker-compose.yml"),
        engine,
    )


@pytest.mark.parametrize(
    ("fields", "ssl_cert", "expected"),
    [
        ({"useLetsEncrypt": True}, "", CertificateStrategy.MANAGED_CA),
        ({"useLetsEncrypt": True}, "custom.crt", CertificateStrategy.MANAGED_CA),
        ({"useLetsEncrypt": False}, "custom.crt", CertificateStrategy.CUSTOM),
        ({"useLetsEncrypt": False}, "", CertificateStrategy.SELF_SIGNED),
        ({}, "   ", CertificateStrategy.SELF_SIGNED),
    ],
)
def test_select_strategy_first_rule_wins(
    fields: dict[str, object],
    ssl_cert: str,
    expected: CertificateStrategy,
) -> None:
    """Let's Encrypt beats a custom certificate, which beats self-signed."""
    assert select_strategy(SettingsDocument(dict(fields)), ssl_cert) is expected


def test_refresh_runs_script_in_proxy(engine: FakeEngine, tmp_path: Path) -> None:
    """The refresh script receives the strategy and the hostname."""
    engine.outputs["/refresh-certificate.sh"] = "Certificate renewed\n"
    refresher = _refresher(
        engine,
        tmp_path,
        settings={"hostname": "unms.example.com", "useLetsEncrypt": True},
    )

    result = refresher.refresh()

    assert result.strategy is CertificateStrategy.MANAGED_CA
    assert result.hostname == "unms.example.com"
    assert result.output == "Certificate renewed"
    call = engine.commands("exec")[-1]
    assert call[1:4] == (
        "nginx",
        "/refresh-certificate.sh",
        ("letsencrypt", "unms.example.com"),
    )


def test_refresh_custom_certificate(engine: FakeEngine, tmp_path: Path) -> None:
    """A configured SSL_CERT selects the custom strategy."""
    refresher = _refresher(
        engine,
        tmp_path,
        settings={"hostname": "unms.example.com", "useLetsEncrypt": False},
        ssl_cert="unms.crt",
    )

    assert refresher.refresh().strategy is CertificateStrategy.CUSTOM


def test_missing_ssl_cert_entry_means_self_signed(engine: FakeEngine, tmp_path: Path) -> None:
    """An absent SSL_CERT assignment is treated as empty."""
    refresher = _refresher(
        engine,
        tmp_path,
        settings={"hostname": "unms.local"},
        ssl_cert=None,
    )

    assert refresher.plan() == (CertificateStrategy.SELF_SIGNED, "unms.local")


def test_refresh_requires_running_stack(stopped_engine: FakeEngine, tmp_path: Path) -> None:
    """Nothing is executed while the stack is stopped."""
    refresher = _refresher(stopped_engine, tmp_path, settings={"hostname": "unms.local"})

    with pytest.raises(PreconditionError, match="Start it first: unmsctl start"):
        refresher.refresh()

    assert stopped_engine.commands("exec") == []


def test_refresh_without_hostname_fails(engine: FakeEngine, tmp_path: Path) -> None:
    """A document without a hostname stops the refresh before the script runs."""
    refresher = _refresher(engine, tmp_path, settings={"useLetsEncrypt": True})

    with pytest.raises(ParseError, match="hostname"):
        refresher.refresh()

    assert all(call[2] != "/refresh-certificate.sh" for call in engine.commands("exec"))


def test_inspect_reports_expiry(tmp_path: Path) -> None:
    """Subject, issuer and remaining validity are read from the PEM file."""
    cert_dir = tmp_path / "cert"
    _create_self_signed_cert(cert_dir / "live.crt")
    inspector = CertificateInspector(cert_dir)

    info = inspector.inspect(inspector.certificate_path(), now=NOW)

    assert info.path == cert_dir / "live.crt"
    assert info.subject == "unms.example.com"
    assert info.issuer == "unms.example.com"
    assert info.days_remaining == 30
    assert info.to_dict()["not_valid_after"] == "2030-01-31T00:00:00+00:00"


def test_certificate_path_prefers_custom(tmp_path: Path) -> None:
    """Relative custom names resolve under the certificate directory."""
    inspector = CertificateInspector(tmp_path / "cert")

    assert inspector.certificate_path("unms.crt") == tmp_path / "cert" / "unms.crt"
    assert inspector.certificate_path("/etc/ssl/unms.crt") == Path("/etc/ssl/unms.crt")
    assert inspector.certificate_path(" ") == tmp_path / "cert" / "live.crt"


def test_inspect_missing_and_invalid(tmp_path: Path) -> None:
    """Missing files and non-PEM content raise distinct errors."""
    inspector = CertificateInspector(tmp_path)
    with pytest.raises(NotFoundError, match="does not exist"):
        inspector.inspect(tmp_path / "live.crt")

    bogus = tmp_path / "bogus.crt"
    bogus.write_text("not a certificate", encoding="utf-8")
    with pytest.raises(ParseError, match="not a PEM encoded certificate"):
        inspector.inspect(bogus)
