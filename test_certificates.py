#!/usr/bin/env python3
"""测试自签名证书生成（不调用真实openssl）"""

import subprocess
import sys

import pytest

import services.certificates as certificates
from services.certificates import generate_self_signed


@pytest.fixture
def fake_openssl(monkeypatch):
    calls = []

    def fake_run(args, **kwargs):
        calls.append(args)
        key = args[args.index("-keyout") + 1]
        cert = args[args.index("-out") + 1]
        with open(key, "w") as f:
            f.write("key")
        with open(cert, "w") as f:
            f.write("cert")
        return subprocess.CompletedProcess(args, 0, "", "")

    monkeypatch.setattr(certificates.shutil, "which", lambda name: "/usr/bin/openssl")
    monkeypatch.setattr(certificates.subprocess, "run", fake_run)
    return calls


def test_generate_for_hostname(fake_openssl, tmp_path):
    ok, message = generate_self_signed(tmp_path / "ssl", "blog.example.com")
    assert ok, message
    args = fake_openssl[0]
    assert args[args.index("-subj") + 1] == "/CN=blog.example.com"
    assert args[args.index("-addext") + 1] == "subjectAltName=DNS:blog.example.com"
    assert (tmp_path / "ssl" / "privkey.pem").stat().st_mode & 0o777 == 0o600


def test_generate_for_ip(fake_openssl, tmp_path):
    ok, _ = generate_self_signed(tmp_path, "192.168.1.20")
    assert ok
    args = fake_openssl[0]
    assert args[args.index("-addext") + 1] == "subjectAltName=IP:192.168.1.20"


def test_existing_files_kept(fake_openssl, tmp_path):
    (tmp_path / "fullchain.pem").write_text("real cert", encoding="utf-8")
    ok, message = generate_self_signed(tmp_path, "example.com")
    assert not ok
    assert "already exist" in message
    assert fake_openssl == []
    assert (tmp_path / "fullchain.pem").read_text(encoding="utf-8") == "real cert"

    assert generate_self_signed(tmp_path, "example.com", overwrite=True)[0]


def test_openssl_missing(monkeypatch, tmp_path):
    monkeypatch.setattr(certificates.shutil, "which", lambda name: None)
    assert generate_self_signed(tmp_path, "example.com") == (False, "openssl not found in PATH")


def test_openssl_failure(monkeypatch, tmp_path):
    monkeypatch.setattr(certificates.shutil, "which", lambda name: "/usr/bin/openssl")
    monkeypatch.setattr(
        certificates.subprocess, "run",
        lambda args, **kwargs: subprocess.CompletedProcess(args, 1, "", "unknown option -addext\n")
    )
    assert generate_self_signed(tmp_path, "example.com") == (False, "unknown option -addext")


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
