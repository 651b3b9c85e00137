"""ACME protocol client implementation (HTTP-01)."""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

import josepy as jose
import requests
from acme import challenges, client, errors, messages
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from ..errors import (
    AcquisitionError,
    AuthorityRejected,
    AuthorityUnavailable,
    RateLimited,
    ValidationTimeout,
    ValidationUnreachable,
)
from .models import CertificateMaterial

logger = logging.getLogger(__name__)

# Problem types meaning the authority could not see our validation response
UNREACHABLE_PROBLEMS = {"connection", "dns", "unauthorized", "incorrectResponse", "tls"}

PublishFn = Callable[[str, str, str], None]
WithdrawFn = Callable[[str], None]


def classify_acme_error(error: messages.Error, host: str) -> AcquisitionError:
    """Map an ACME problem document onto the acquisition error taxonomy."""
    typ = error.typ or ""
    code = typ.rsplit(":", 1)[-1]
    detail = error.detail or str(error)
    if code == "rateLimited":
        return RateLimited(f"Rate limited for {host}: {detail}", host=host)
    if code in UNREACHABLE_PROBLEMS:
        return ValidationUnreachable(f"Authority could not validate {host}: {detail}", host=host)
    return AuthorityRejected(f"Authority rejected {host}: {detail}", host=host)


def classify_validation_error(error: errors.ValidationError, host: str) -> AcquisitionError:
    """Find the first challenge error inside a failed authorization."""
    for authzr in error.failed_authzrs:
        for challb in authzr.body.challenges:
            if challb.error:
                return classify_acme_error(challb.error, host)
    return ValidationUnreachable(f"Authorization failed for {host}", host=host)


class ACMEClient:
    """Synchronous ACME client; run it from a worker thread."""

    def __init__(self, directory_url: str, email: str, key_size: int = 2048,
                 user_agent: str = "proxyctl"):
        self.directory_url = directory_url
        self.email = email
        self.account_key_size = key_size
        self.cert_key_size = key_size
        self.user_agent = user_agent

    def _generate_rsa_key(self, key_size: int) -> Tuple[rsa.RSAPrivateKey, str]:
        """Generate RSA key pair."""
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)

        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption()
        ).decode('utf-8')

        return private_key, private_pem

    def generate_account_key(self) -> str:
        """Create a new account key PEM."""
        _, private_pem = self._generate_rsa_key(self.account_key_size)
        return private_pem

    def _create_acme_client(self, account_key_pem: str) -> client.ClientV2:
        """Create ACME client instance."""
        private_key = serialization.load_pem_private_key(account_key_pem.encode('utf-8'), password=None)
        net = client.ClientNetwork(jose.JWKRSA(key=private_key), user_agent=self.user_agent)
        try:
            directory = client.ClientV2.get_directory(self.directory_url, net)
        except requests.exceptions.RequestException as e:
            raise AuthorityUnavailable(f"ACME directory {self.directory_url} unreachable: {e}")
        return client.ClientV2(directory, net=net)

    def _register_or_login(self, acme_client: client.ClientV2) -> messages.RegistrationResource:
        """Register new account or login with existing."""
        try:
            new_reg = messages.NewRegistration.from_data(
                email=self.email,
                terms_of_service_agreed=True
            )
            regr = acme_client.new_account(new_reg)
            logger.info(f"Registered new ACME account for {self.email}")
            return regr
        except errors.ConflictError as e:
            # Account already exists; the Location header carries its URI
            logger.info(f"Using existing ACME account for {self.email}")
            regr = messages.RegistrationResource(
                body=messages.Registration(),
                uri=e.location
            )
            return acme_client.query_registration(regr)

    def _create_csr(self, private_key, domains: List[str]) -> bytes:
        """Create Certificate Signing Request in PEM format."""
        builder = x509.CertificateSigningRequestBuilder()

        builder = builder.subject_name(x509.Name([
            x509.NameAttribute(NameOID.COMMON_NAME, domains[0])
        ]))

        san_list = [x509.DNSName(domain) for domain in domains]
        builder = builder.add_extension(
            x509.SubjectAlternativeName(san_list),
            critical=False
        )

        csr = builder.sign(private_key, hashes.SHA256())

        # ACME expects PEM, not DER
        return csr.public_bytes(serialization.Encoding.PEM)

    def _answer_http01(self, acme_client: client.ClientV2, authz: messages.AuthorizationResource,
                       host: str, publish: PublishFn) -> None:
        """Publish and answer the HTTP-01 challenge of one authorization."""
        if authz.body.status == messages.STATUS_VALID:
            logger.info(f"Authorization for {host} already valid")
            return

        http_challenge = None
        for challenge in authz.body.challenges:
            if isinstance(challenge.chall, challenges.HTTP01):
                http_challenge = challenge
                break

        if not http_challenge:
            raise AuthorityRejected(f"No HTTP-01 challenge offered for {host}", host=host)

        response, validation = http_challenge.chall.response_and_validation(acme_client.net.key)

        # The token must be the base64url-encoded string, not raw bytes
        token = http_challenge.chall.encode('token')
        publish(host, token, validation)

        logger.info(f"Answering HTTP-01 challenge for {host}")
        acme_client.answer_challenge(http_challenge, response)

    def issue(self, host: str, account_key_pem: str, publish: PublishFn,
              deadline: datetime, withdraw: Optional[WithdrawFn] = None) -> CertificateMaterial:
        """Run a complete order for ``host`` and return the issued material.

        Args:
            host: Host name to certify
            account_key_pem: ACME account key
            publish: Callback exposing (host, token, key_authorization) on the validation channel
            deadline: Polling deadline for authorization and finalization
            withdraw: Callback removing a published token once the order is done
        """
        logger.info(f"Requesting certificate for {host} from {self.directory_url}")
        published: List[str] = []

        def _publish(challenge_host: str, token: str, validation: str) -> None:
            publish(challenge_host, token, validation)
            published.append(token)

        # acme polls against naive local time
        if deadline.tzinfo is not None:
            poll_deadline = deadline.astimezone().replace(tzinfo=None)
        else:
            poll_deadline = deadline

        try:
            acme_client = self._create_acme_client(account_key_pem)
            self._register_or_login(acme_client)

            cert_key, cert_key_pem = self._generate_rsa_key(self.cert_key_size)
            csr = self._create_csr(cert_key, [host])
            order = acme_client.new_order(csr)

            for authz in order.authorizations:
                self._answer_http01(acme_client, authz, host, _publish)

            order = acme_client.poll_and_finalize(order, deadline=poll_deadline)
        except messages.Error as e:
            raise classify_acme_error(e, host)
        except errors.ValidationError as e:
            raise classify_validation_error(e, host)
        except errors.TimeoutError:
            raise ValidationTimeout(f"Authorization for {host} did not complete before {deadline.isoformat()}", host=host)
        except requests.exceptions.RequestException as e:
            raise AuthorityUnavailable(f"ACME request for {host} failed: {e}", host=host)
        finally:
            if withdraw:
                for token in published:
                    withdraw(token)

        fullchain_pem = order.fullchain_pem
        cert_obj = x509.load_pem_x509_certificate(fullchain_pem.encode('utf-8'))

        logger.info(f"Certificate issued for {host}, expires {cert_obj.not_valid_after_utc.isoformat()}")
        return CertificateMaterial(
            fullchain_pem=fullchain_pem,
            private_key_pem=cert_key_pem,
            expires_at=cert_obj.not_valid_after_utc,
            issued_at=cert_obj.not_valid_before_utc,
            fingerprint=f"sha256:{cert_obj.fingerprint(hashes.SHA256()).hex()}"
        )
