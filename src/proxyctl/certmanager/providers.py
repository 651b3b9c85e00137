"""Certificate providers: static material and ACME acquisition.

Both providers satisfy :class:`CertificateProvider`; the convergence engine
picks one per assignment from a ``{CertificateSource: provider}`` mapping.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization

from ..errors import CertificateMaterialInvalid, ValidationTimeout, ValidationUnreachable
from ..proxy.routes import CertificateSource, DNSMode, TLSSettings
from ..shared.config import Config
from ..shared.logger import log_info, log_warning
from .acme_client import ACMEClient
from .challenge_server import ChallengeResponder
from .models import CertificateAssignment, CertificateMaterial

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CertificateProvider(Protocol):
    """Uniform contract over certificate sources."""

    source: CertificateSource

    async def acquire(self, host: str, tls: TLSSettings,
                      dns_mode: DNSMode = DNSMode.DIRECT) -> CertificateMaterial:
        ...

    def needs_renewal(self, assignment: CertificateAssignment, now: datetime) -> bool:
        ...


def load_leaf_certificate(fullchain_pem: str, host: Optional[str] = None) -> x509.Certificate:
    """Parse the leaf (first) certificate of a PEM chain."""
    try:
        return x509.load_pem_x509_certificate(fullchain_pem.encode('utf-8'))
    except ValueError as e:
        raise CertificateMaterialInvalid(f"Certificate PEM for {host} does not parse: {e}", host=host)


def certificate_fingerprint(cert: x509.Certificate) -> str:
    return f"sha256:{cert.fingerprint(hashes.SHA256()).hex()}"


def _public_key_der(public_key) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )


class StaticCertificateProvider:
    """Hands back operator-supplied material unchanged."""

    source = CertificateSource.STATIC

    def __init__(self, lifetime_days: int = Config.STATIC_CERT_LIFETIME_DAYS, clock: Clock = utcnow):
        self.lifetime = timedelta(days=lifetime_days)
        self.clock = clock

    async def acquire(self, host: str, tls: TLSSettings,
                      dns_mode: DNSMode = DNSMode.DIRECT) -> CertificateMaterial:
        cert = load_leaf_certificate(tls.certificate_pem, host)
        try:
            private_key = serialization.load_pem_private_key(tls.private_key_pem.encode('utf-8'), password=None)
        except (ValueError, TypeError) as e:
            raise CertificateMaterialInvalid(f"Private key for {host} does not parse: {e}", host=host)

        if _public_key_der(private_key.public_key()) != _public_key_der(cert.public_key()):
            raise CertificateMaterialInvalid(f"Private key for {host} does not match its certificate", host=host)

        fingerprint = certificate_fingerprint(cert)

        now = self.clock()
        log_info("Static certificate loaded", component="certificates", host=host, fingerprint=fingerprint)
        return CertificateMaterial(
            fullchain_pem=tls.certificate_pem,
            private_key_pem=tls.private_key_pem,
            expires_at=now + self.lifetime,
            issued_at=now,
            fingerprint=fingerprint
        )

    def needs_renewal(self, assignment: CertificateAssignment, now: datetime) -> bool:
        return False


class AcmeCertificateProvider:
    """Acquires certificates over ACME HTTP-01.

    Acquisitions are serialized per provider: the validation channel is one
    port in one process. The ACME exchange itself is blocking and runs in a
    worker thread bounded by ``timeout``.
    """

    source = CertificateSource.ACME

    def __init__(
        self,
        client: ACMEClient,
        responder: ChallengeResponder,
        storage=None,
        timeout: float = Config.ACME_TIMEOUT_SECONDS,
        renewal_threshold_days: int = Config.RENEWAL_THRESHOLD_DAYS,
        executor: Optional[ThreadPoolExecutor] = None,
        clock: Clock = utcnow,
    ):
        self.client = client
        self.responder = responder
        self.storage = storage
        self.timeout = timeout
        self.renewal_threshold = timedelta(days=renewal_threshold_days)
        self.executor = executor or ThreadPoolExecutor(
            max_workers=Config.CERT_GEN_MAX_WORKERS, thread_name_prefix="acme"
        )
        self.clock = clock
        self._validation_lock = asyncio.Lock()
        self._account_key_pem: Optional[str] = None

    async def _get_account_key(self) -> str:
        if self._account_key_pem:
            return self._account_key_pem

        directory_url = self.client.directory_url
        email = self.client.email
        if self.storage:
            self._account_key_pem = await self.storage.get_account_key(directory_url, email)

        if not self._account_key_pem:
            loop = asyncio.get_running_loop()
            self._account_key_pem = await loop.run_in_executor(self.executor, self.client.generate_account_key)
            if self.storage:
                await self.storage.store_account_key(directory_url, email, self._account_key_pem)
            log_info("Generated ACME account key", component="certificates", email=email)

        return self._account_key_pem

    async def acquire(self, host: str, tls: TLSSettings,
                      dns_mode: DNSMode = DNSMode.DIRECT) -> CertificateMaterial:
        if dns_mode == DNSMode.PROXIED:
            raise ValidationUnreachable(
                f"{host} is proxied through an intermediary; HTTP-01 validation cannot reach this controller",
                host=host
            )

        async with self._validation_lock:
            account_key_pem = await self._get_account_key()
            deadline = self.clock() + timedelta(seconds=self.timeout)
            loop = asyncio.get_running_loop()
            log_info("Starting ACME acquisition", component="certificates", host=host)

            async with self.responder:
                try:
                    return await asyncio.wait_for(
                        loop.run_in_executor(
                            self.executor, self.client.issue,
                            host, account_key_pem, self.responder.publish, deadline,
                            self.responder.withdraw
                        ),
                        timeout=self.timeout
                    )
                except asyncio.TimeoutError:
                    log_warning("ACME acquisition timed out", component="certificates",
                                host=host, timeout=self.timeout)
                    raise ValidationTimeout(
                        f"ACME acquisition for {host} exceeded {self.timeout}s", host=host
                    )

    def needs_renewal(self, assignment: CertificateAssignment, now: datetime) -> bool:
        if assignment.source != CertificateSource.ACME or assignment.expiry is None:
            return False
        return assignment.expiry - now < self.renewal_threshold


def build_providers(config: Config, storage=None) -> Dict[CertificateSource, CertificateProvider]:
    """Wire the providers from configuration."""
    providers: Dict[CertificateSource, CertificateProvider] = {
        CertificateSource.STATIC: StaticCertificateProvider(lifetime_days=config.STATIC_CERT_LIFETIME_DAYS),
    }
    if config.ACME_EMAIL:
        acme_client = ACMEClient(
            directory_url=config.ACME_DIRECTORY_URL,
            email=config.ACME_EMAIL,
            key_size=config.RSA_KEY_SIZE
        )
        responder = ChallengeResponder(host=config.ACME_CHALLENGE_HOST, port=config.ACME_CHALLENGE_PORT)
        providers[CertificateSource.ACME] = AcmeCertificateProvider(
            acme_client,
            responder,
            storage=storage,
            timeout=config.ACME_TIMEOUT_SECONDS,
            renewal_threshold_days=config.RENEWAL_THRESHOLD_DAYS
        )
    else:
        log_warning("ACME_EMAIL not set; hosts declaring acme TLS will fail acquisition",
                    component="certificates")
    return providers
