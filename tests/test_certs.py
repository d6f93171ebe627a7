"""Tests for certs.py - openssl certificate helpers."""

import os
import subprocess
import sys
import time
from pathlib import Path
from unittest.mock import patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from certs import (
    CertificateError,
    CertificateSubject,
    build_san_entries,
    cert_contains,
    cert_expires_within,
    generate_self_signed_cert,
    get_cert_fingerprint,
    is_ip_literal,
    is_valid_private_key,
    is_valid_x509,
    start_dhparam_generation,
    validate_cert_pair,
    verify_cert_key_match,
)
from conftest import requires_openssl


def _generate(tmp_path, name='cert', cn='test.example', algorithm='ec', days=30):
    cert = tmp_path / f'{name}.pem'
    key = tmp_path / f'{name}.key'
    generate_self_signed_cert(
        cert_path=cert,
        key_path=key,
        subject=CertificateSubject(common_name=cn),
        san_entries=build_san_entries(cn),
        days=days,
        key_algorithm=algorithm,
    )
    return cert, key


class TestSanEntries:
    """Tests for build_san_entries."""

    def test_defaults_included(self):
        entries = build_san_entries('ssh.example.com')
        assert entries[0] == 'DNS:ssh.example.com'
        assert 'DNS:localhost' in entries
        assert 'IP:127.0.0.1' in entries
        assert 'IP:::1' in entries

    def test_extra_entries_and_dedup(self):
        """Bare names become DNS/IP entries; duplicates are dropped."""
        entries = build_san_entries('localhost', 'alt.example, 10.0.0.5,DNS:localhost')
        assert entries.count('DNS:localhost') == 1
        assert 'DNS:alt.example' in entries
        assert 'IP:10.0.0.5' in entries

    def test_ip_literal(self):
        assert is_ip_literal('10.1.2.3')
        assert is_ip_literal('::1')
        assert not is_ip_literal('host.example')


@requires_openssl
class TestGenerateSelfSigned:
    """Tests for generate_self_signed_cert with real openssl."""

    def test_ec_pair_is_valid(self, tmp_path):
        """Generated EC pair parses, matches and carries the CN."""
        cert, key = _generate(tmp_path)

        assert is_valid_x509(cert)
        assert is_valid_private_key(key)
        assert verify_cert_key_match(cert, key)
        assert cert_contains(cert, 'test.example')

    def test_rsa_pair_is_valid(self, tmp_path):
        """RSA keys are used in FIPS mode."""
        cert, key = _generate(tmp_path, algorithm='rsa')
        assert verify_cert_key_match(cert, key)
        assert cert_contains(cert, 'rsaEncryption')

    def test_permissions(self, tmp_path):
        cert, key = _generate(tmp_path)
        assert (os.stat(key).st_mode & 0o777) == 0o600
        assert (os.stat(cert).st_mode & 0o777) == 0o644

    def test_san_present(self, tmp_path):
        cert, _ = _generate(tmp_path, cn='ssh.example.com')
        assert cert_contains(cert, 'DNS:ssh.example.com')
        assert cert_contains(cert, 'IP Address:127.0.0.1')

    def test_fingerprint_format(self, tmp_path):
        cert, _ = _generate(tmp_path)
        fingerprint = get_cert_fingerprint(cert)
        assert len(fingerprint.split(':')) == 32

    def test_unsupported_algorithm(self, tmp_path):
        with pytest.raises(CertificateError):
            generate_self_signed_cert(
                tmp_path / 'c.pem', tmp_path / 'k.pem',
                CertificateSubject(common_name='x'), ['DNS:x'], key_algorithm='dsa',
            )

    def test_openssl_failure_raises(self, tmp_path):
        """openssl errors surface as CertificateError."""
        with pytest.raises(CertificateError):
            generate_self_signed_cert(
                tmp_path / 'c.pem', tmp_path / 'k.pem',
                CertificateSubject(common_name='x'), ['DNS:x'],
                key_algorithm='rsa', key_bits=1,
            )


@requires_openssl
class TestValidateCertPair:
    """Tests for validate_cert_pair."""

    def test_valid_pair(self, tmp_path):
        cert, key = _generate(tmp_path)
        ok, reason = validate_cert_pair(cert, key)
        assert ok, reason

    def test_mismatched_pair(self, tmp_path):
        """Public keys of cert and key must agree."""
        cert_a, _ = _generate(tmp_path, name='a')
        _, key_b = _generate(tmp_path, name='b')
        ok, reason = validate_cert_pair(cert_a, key_b)
        assert not ok
        assert 'do not match' in reason

    def test_missing_files(self, tmp_path):
        ok, reason = validate_cert_pair(tmp_path / 'none.pem', tmp_path / 'none.key')
        assert not ok
        assert 'not found' in reason

    def test_garbage_certificate(self, tmp_path):
        _, key = _generate(tmp_path)
        bad = tmp_path / 'bad.pem'
        bad.write_text("not a certificate\n")
        ok, reason = validate_cert_pair(bad, key)
        assert not ok
        assert 'Invalid certificate format' in reason

    def test_expiring_certificate(self, tmp_path):
        """A one-day certificate fails a two-day validity requirement."""
        cert, key = _generate(tmp_path, days=1)
        assert cert_expires_within(cert, 2 * 86400)
        ok, reason = validate_cert_pair(cert, key, min_validity=2 * 86400)
        assert not ok
        assert 'expires within' in reason


class TestDhparamGeneration:
    """Tests for start_dhparam_generation."""

    def test_runs_in_background(self, tmp_path):
        """Generation is detached and writes via a temporary file."""
        target = tmp_path / 'certs' / 'dhparam.pem'
        with patch('certs.subprocess.Popen') as mock_popen:
            start_dhparam_generation(target, 2048)

        args, kwargs = mock_popen.call_args
        script = args[0][2]
        assert 'openssl dhparam' in script
        assert 'dhparam.pem.tmp' in script
        assert '2048' in script
        assert kwargs.get('start_new_session') is True
        assert target.parent.is_dir()

    def test_finished_process_is_reaped(self, tmp_path):
        """The caller never waits, yet the exited child does not linger."""
        real_popen = subprocess.Popen
        with patch('certs.subprocess.Popen', side_effect=lambda *a, **kw: real_popen(['true'])):
            process = start_dhparam_generation(tmp_path / 'dhparam.pem', 2048)

        deadline = time.monotonic() + 10
        while process.returncode is None and time.monotonic() < deadline:
            time.sleep(0.05)
        assert process.returncode == 0

    def test_start_failure_is_not_fatal(self, tmp_path):
        with patch('certs.subprocess.Popen', side_effect=OSError('no sh')):
            assert start_dhparam_generation(tmp_path / 'dhparam.pem', 2048) is None
