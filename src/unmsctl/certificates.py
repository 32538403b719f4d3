"""Certificate refresh and inspection."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from cryptography import x509
from cryptography.x509.oid import NameOID

from .conf_store import ConfigStore
from .errors import NotFoundError, ParseError, PreconditionError, UnmsctlError
from .settings import ContainerExecutor, SettingsBlobStore, SettingsDocument
from .stack import RuntimeStateProbe

LOGGER = logging.getLogger(__name__)

LIVE_CERTIFICATE_NAME = "live.crt"


class CertificateStrategy(Enum):
    """How the proxy obtains its certificate."""

    MANAGED_CA = "letsencrypt"
    CUSTOM = "custom"
    SELF_SIGNED = "self-signed"


def select_strategy(document: SettingsDocument, ssl_cert: str) -> CertificateStrategy:
    """Pick the refresh strategy; the first matching rule wins."""
    if document.use_lets_encrypt:
        return CertificateStrategy.MANAGED_CA
    if ssl_cert.strip():
        return CertificateStrategy.CUSTOM
    return CertificateStrategy.SELF_SIGNED


@dataclass(frozen=True)
class RefreshResult:
    """Outcome of a certificate refresh."""

    strategy: CertificateStrategy
    hostname: str
    output: str


class CertificateRefresher:
    """Trigger certificate renewal inside the proxy container.

    Issuance is rate limited by the CA, so a failed refresh is reported as-is
    and never retried.
    """

    def __init__(
        self,
        probe: RuntimeStateProbe,
        settings: SettingsBlobStore,
        config_store: ConfigStore,
        executor: ContainerExecutor,
        *,
        proxy_service: str = "nginx",
        refresh_command: str = "/refresh-certificate.sh",
    ) -> None:
        """Wire the refresher to its collaborators."""
        self.probe = probe
        self.settings = settings
        self.config_store = config_store
        self.executor = executor
        self.proxy_service = proxy_service
        self.refresh_command = refresh_command

    def plan(self) -> tuple[CertificateStrategy, str]:
        """Return the strategy and hostname a refresh would use."""
        document = self.settings.load()
        hostname = document.hostname
        return select_strategy(document, self._ssl_cert()), hostname

    def refresh(self) -> RefreshResult:
        """Refresh the certificate, requiring a running stack."""
        if not self.probe.is_running():
            raise PreconditionError(
                "UNMS is not running. Start it first: unmsctl start",
                remediation="unmsctl start",
            )
        strategy, hostname = self.plan()
        LOGGER.info("Refreshing certificate for %s using %s", hostname, strategy.value)
        result = self.executor.exec(
            self.proxy_service,
            self.refresh_command,
            [strategy.value, hostname],
        )
        return RefreshResult(strategy=strategy, hostname=hostname, output=result.stdout.strip())

    def _ssl_cert(self) -> str:
        try:
            return self.config_store.get("ssl-cert")
        except NotFoundError:
            return ""


@dataclass(frozen=True)
class CertificateInfo:
    """Summary of a certificate on disk."""

    path: Path
    subject: str | None
    issuer: str | None
    not_valid_after: datetime
    days_remaining: int

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "path": str(self.path),
            "subject": self.subject,
            "issuer": self.issuer,
            "not_valid_after": self.not_valid_after.isoformat(),
            "days_remaining": self.days_remaining,
        }


class CertificateInspector:
    """Read the certificate currently served by the proxy."""

    def __init__(self, cert_dir: Path) -> None:
        """Look for certificates under *cert_dir*."""
        self.cert_dir = cert_dir

    def certificate_path(self, ssl_cert: str = "") -> Path:
        """Return the custom certificate path when set, else the live one."""
        name = ssl_cert.strip()
        if not name:
            return self.cert_dir / LIVE_CERTIFICATE_NAME
        candidate = Path(name)
        return candidate if candidate.is_absolute() else self.cert_dir / candidate

    def inspect(self, path: Path, *, now: datetime | None = None) -> CertificateInfo:
        """Load *path* and summarise subject, issuer and expiry."""
        try:
            data = path.read_bytes()
        except FileNotFoundError as exc:
            raise NotFoundError(
                f"Certificate {path} does not exist.",
                remediation="unmsctl refresh-certificate",
            ) from exc
        except OSError as exc:
            raise UnmsctlError(f"Unable to read certificate {path}: {exc}") from exc
        try:
            cert = x509.load_pem_x509_certificate(data)
        except ValueError as exc:
            raise ParseError(f"{path} is not a PEM encoded certificate: {exc}") from exc

        not_after_attr = getattr(cert, "not_valid_after_utc", None)
        if isinstance(not_after_attr, datetime):
            not_after = not_after_attr
        else:  # pragma: no cover - compatibility fallback
            not_after = cert.not_valid_after.replace(tzinfo=UTC)
        moment = now or datetime.now(tz=UTC)
        return CertificateInfo(
            path=path,
            subject=_common_name(cert.subject),
            issuer=_common_name(cert.issuer),
            not_valid_after=not_after,
            days_remaining=(not_after - moment).days,
        )


def _common_name(name: x509.Name) -> str | None:
    attributes = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attributes:
        return None
    value = attributes[0].value
    return value if isinstance(value, str) else value.decode("utf-8", "replace")


__all__ = [
    "CertificateInfo",
    "CertificateInspector",
    "CertificateRefresher",
    "CertificateStrategy",
    "RefreshResult",
    "select_strategy",
]
