"""Certificate management component."""

from .models import AssignmentState, CertificateAssignment, CertificateMaterial, ChallengeToken
from .providers import (
    AcmeCertificateProvider,
    CertificateProvider,
    StaticCertificateProvider,
    build_providers,
)

__all__ = [
    'AssignmentState',
    'CertificateAssignment',
    'CertificateMaterial',
    'ChallengeToken',
    'CertificateProvider',
    'StaticCertificateProvider',
    'AcmeCertificateProvider',
    'build_providers',
]
