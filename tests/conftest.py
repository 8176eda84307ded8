"""Shared fixtures: throwaway PKIs and SVID directories."""

import ipaddress
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from svidrotator.config import CredentialPaths


def _pem(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def _key_pem(key: ec.EllipticCurvePrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


@dataclass
class SVIDMaterial:
    cert: bytes
    key: bytes
    bundle: bytes


class TestPKI:
    """A one-level CA issuing SVID-like leaf certificates."""

    __test__ = False

    def __init__(self, trust_domain: str = "example.org") -> None:
        self.trust_domain = trust_domain
        self.key = ec.generate_private_key(ec.SECP256R1())
        name = x509.Name([
            x509.NameAttribute(NameOID.COMMON_NAME, f"{trust_domain} CA"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "SPIFFE"),
        ])
        now = datetime.now(timezone.utc)
        ski = x509.SubjectKeyIdentifier.from_public_key(self.key.public_key())
        self.cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(self.key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=5))
            .not_valid_after(now + timedelta(days=1))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(ski, critical=False)
            .sign(self.key, hashes.SHA256())
        )

    @property
    def bundle(self) -> bytes:
        return _pem(self.cert)

    def issue(
        self,
        workload: str = "ping",
        valid_for: timedelta = timedelta(hours=1),
    ) -> SVIDMaterial:
        key = ec.generate_private_key(ec.SECP256R1())
        now = datetime.now(timezone.utc)
        spiffe_id = f"spiffe://{self.trust_domain}/ns/default/sa/{workload}"
        not_before = min(now - timedelta(minutes=1), now + valid_for - timedelta(minutes=1))
        cert = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([
                x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, "SPIRE"),
            ]))
            .issuer_name(self.cert.subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(now + valid_for)
            .add_extension(
                x509.SubjectAlternativeName([
                    x509.UniformResourceIdentifier(spiffe_id),
                    x509.DNSName("localhost"),
                    x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
                ]),
                critical=False,
            )
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=True,
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]),
                critical=False,
            )
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(self.key.public_key()),
                critical=False,
            )
            .sign(self.key, hashes.SHA256())
        )
        return SVIDMaterial(cert=_pem(cert), key=_key_pem(key), bundle=self.bundle)


def write_atomic(path: Path, data: bytes) -> None:
    """Write like the identity agent does: temp file, then rename over."""
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_bytes(data)
    os.replace(tmp, path)


def write_svid(paths: CredentialPaths, material: SVIDMaterial) -> None:
    for target, data in zip(paths.all(), (material.cert, material.key, material.bundle)):
        Path(target).parent.mkdir(parents=True, exist_ok=True)
        write_atomic(Path(target), data)


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture()
def pki() -> TestPKI:
    return TestPKI()


@pytest.fixture()
def svid_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "x509svid"
    directory.mkdir()
    return directory


@pytest.fixture()
def paths(svid_dir: Path) -> CredentialPaths:
    return CredentialPaths(
        cert=str(svid_dir / "svid.0.pem"),
        key=str(svid_dir / "svid.0.key"),
        bundle=str(svid_dir / "bundle.0.pem"),
    )


@pytest.fixture()
def svid(pki: TestPKI, paths: CredentialPaths) -> SVIDMaterial:
    """A valid SVID already written to ``paths``."""
    material = pki.issue()
    write_svid(paths, material)
    return material
