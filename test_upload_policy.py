#!/usr/bin/env python3
"""测试上传限制：nginx请求体上限与PHP上传配置"""

import sys

import pytest
from pydantic import ValidationError

from models.upload_policy import UploadPolicy
from utils.size_units import parse_size, format_size, is_unlimited

MB = 1024 * 1024


def test_parse_size_units():
    assert parse_size("64M") == 64 * MB
    assert parse_size("75m") == 75 * MB
    assert parse_size("1g") == 1024 * MB
    assert parse_size("512K") == 512 * 1024
    assert parse_size("1000") == 1000
    assert parse_size(42) == 42
    assert is_unlimited("0")


@pytest.mark.parametrize("value", ["", "64MB", "-1", "1.5M", True, -3])
def test_parse_size_rejects_bad_values(value):
    with pytest.raises(ValueError):
        parse_size(value)


def test_format_size():
    assert format_size(64 * MB) == "64M"
    assert format_size(75 * MB, style="nginx") == "75m"
    assert format_size(1536) == "1536"
    assert format_size(2048) == "2K"
    assert format_size(0) == "0"


def test_defaults_accept_upload_under_limits():
    policy = UploadPolicy()
    verdict = policy.check_upload(20 * MB, proxy_limit=75 * MB)
    assert verdict.accepted
    assert verdict.status_code == 200


def test_proxy_rejects_first_with_413():
    policy = UploadPolicy()
    verdict = policy.check_upload(80 * MB, proxy_limit=75 * MB)
    assert not verdict.accepted
    assert verdict.rejected_by == "nginx"
    assert verdict.status_code == 413
    assert verdict.limit_name == "client_max_body_size"


def test_php_rejects_between_limits():
    # passes nginx (75m), fails PHP (64M)
    verdict = UploadPolicy().check_upload(70 * MB, proxy_limit=75 * MB)
    assert not verdict.accepted
    assert verdict.rejected_by == "php"
    assert verdict.limit_name == "post_max_size"


def test_upload_max_filesize_checked_per_file():
    policy = UploadPolicy(upload_max_filesize="10M", post_max_size="64M")
    verdict = policy.check_upload(12 * MB, request_size=13 * MB)
    assert verdict.limit_name == "upload_max_filesize"
    assert verdict.limit_bytes == 10 * MB


def test_client_max_body_size_boundary():
    policy = UploadPolicy(upload_max_filesize="0", post_max_size="0")
    assert policy.check_upload(75 * MB, proxy_limit=75 * MB).accepted

    verdict = policy.check_upload(75 * MB + 1, proxy_limit=75 * MB)
    assert verdict.status_code == 413
    assert verdict.limit_name == "client_max_body_size"


def test_post_max_size_boundary():
    policy = UploadPolicy(upload_max_filesize="0", post_max_size="64M")
    assert policy.check_upload(64 * MB, proxy_limit=75 * MB).accepted

    verdict = policy.check_upload(64 * MB + 1, proxy_limit=75 * MB)
    assert not verdict.accepted
    assert verdict.rejected_by == "php"
    assert verdict.limit_name == "post_max_size"


def test_upload_max_filesize_boundary():
    policy = UploadPolicy(upload_max_filesize="10M", post_max_size="64M")
    assert policy.check_upload(10 * MB, request_size=11 * MB, proxy_limit=75 * MB).accepted

    verdict = policy.check_upload(10 * MB + 1, request_size=11 * MB, proxy_limit=75 * MB)
    assert not verdict.accepted
    assert verdict.limit_name == "upload_max_filesize"
    assert verdict.limit_bytes == 10 * MB


def test_file_uploads_off_rejects_everything():
    verdict = UploadPolicy(file_uploads=False).check_upload(1)
    assert not verdict.accepted
    assert verdict.limit_name == "file_uploads"


def test_zero_means_unlimited():
    policy = UploadPolicy(upload_max_filesize="0", post_max_size="0")
    assert policy.effective_upload_limit() == 0
    assert policy.check_upload(5000 * MB).accepted


def test_effective_limit_is_smaller_of_two():
    policy = UploadPolicy(upload_max_filesize="64M", post_max_size="32M")
    assert policy.effective_upload_limit() == 32 * MB


def test_consistency_warnings():
    assert UploadPolicy().consistency_warnings(75 * MB) == []

    warnings = UploadPolicy(upload_max_filesize="128M", post_max_size="64M").consistency_warnings(32 * MB)
    assert any("post_max_size" in w for w in warnings)
    assert any("client_max_body_size" in w for w in warnings)

    warnings = UploadPolicy(memory_limit="32M").consistency_warnings()
    assert any("memory_limit" in w for w in warnings)


def test_memory_limit_minus_one():
    policy = UploadPolicy(memory_limit="-1")
    assert policy.memory_limit_bytes is None
    assert policy.consistency_warnings() == []


def test_invalid_size_rejected():
    with pytest.raises(ValidationError):
        UploadPolicy(upload_max_filesize="lots")


def test_negative_file_size_rejected():
    with pytest.raises(ValueError):
        UploadPolicy().check_upload(-1)


def test_ini_round_trip_and_unknown_keys():
    text = (
        "; PHP upload limits\n"
        "file_uploads = On\n"
        "memory_limit = 512M\n"
        "upload_max_filesize = 100M ; per file\n"
        "post_max_size = \"100M\"\n"
        "max_execution_time = 300\n"
        "max_input_vars = 3000\n"
    )
    policy = UploadPolicy.from_ini(text)
    assert policy.memory_limit == "512M"
    assert policy.upload_max_bytes == 100 * MB
    assert policy.post_max_size == "100M"
    assert policy.max_execution_time == 300
    assert UploadPolicy.from_ini(policy.to_ini()) == policy


def test_ini_bad_boolean():
    with pytest.raises(ValueError):
        UploadPolicy.from_ini("file_uploads = maybe\n")


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
