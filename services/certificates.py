"""Self-signed certificate for first boot."""

import shutil
import subprocess
from pathlib import Path
from typing import Tuple
from loguru import logger


OPENSSL_TIMEOUT = 60
DEFAULT_VALID_DAYS = 365


def generate_self_signed(ssl_dir: Path, server_name: str,
                         cert_name: str = "fullchain.pem", key_name: str = "privkey.pem",
                         days: int = DEFAULT_VALID_DAYS, overwrite: bool = False) -> Tuple[bool, str]:
    """
    用openssl生成自签名证书

    Browsers show a trust warning for it. Replace both files with a real
    certificate before going public.

    Returns:
        (success, message)
    """
    ssl_dir = Path(ssl_dir)
    cert_path = ssl_dir / cert_name
    key_path = ssl_dir / key_name

    if (cert_path.exists() or key_path.exists()) and not overwrite:
        return False, f"Certificate files already exist in {ssl_dir}"

    openssl = shutil.which("openssl")
    if not openssl:
        return False, "openssl not found in PATH"

    ssl_dir.mkdir(parents=True, exist_ok=True)
    args = [
        openssl, "req", "-x509", "-nodes",
        "-newkey", "rsa:2048",
        "-days", str(days),
        "-keyout", str(key_path),
        "-out", str(cert_path),
        "-subj", f"/CN={server_name}",
    ]
    # IP addresses and names go into different SAN types
    if server_name.replace(".", "").isdigit():
        args += ["-addext", f"subjectAltName=IP:{server_name}"]
    else:
        args += ["-addext", f"subjectAltName=DNS:{server_name}"]

    try:
        result = subprocess.run(
            args,
            capture_output=True,
            text=True,
            encoding='utf-8',
            errors='replace',
            timeout=OPENSSL_TIMEOUT
        )
    except subprocess.TimeoutExpired:
        logger.error("openssl timeout")
        return False, f"openssl timeout ({OPENSSL_TIMEOUT}s)"
    except OSError as e:
        logger.error(f"openssl error: {e}")
        return False, str(e)

    if result.returncode != 0:
        error_output = result.stderr.strip() if result.stderr else "Unknown error"
        logger.error(f"Certificate generation failed: {error_output}")
        return False, error_output

    key_path.chmod(0o600)
    logger.warning(f"Generated self-signed certificate for {server_name}, browsers will warn until it is replaced")
    return True, f"Self-signed certificate written to {cert_path}"
