"""
File encoding helpers.

Operators edit .env, default.conf and uploads.ini by hand, sometimes on
Windows editors that add a BOM or save as cp1252. Everything the bundle
reads goes through read_file_robust.
"""

from pathlib import Path
from typing import Optional

import chardet
from loguru import logger

# chardet 置信度阈值
MIN_CONFIDENCE = 0.5
DETECT_SAMPLE_BYTES = 100000
FALLBACK_ENCODINGS = ["utf-8", "utf-8-sig", "cp1252", "latin-1"]


def detect_encoding(file_path: Path) -> str:
    """
    检测文件编码

    Args:
        file_path: 文件路径

    Returns:
        检测到的编码名称
    """
    with open(file_path, "rb") as f:
        raw_data = f.read(DETECT_SAMPLE_BYTES)

    if raw_data.startswith(b"\xef\xbb\xbf"):
        return "utf-8-sig"

    # 纯ASCII直接按utf-8处理
    try:
        raw_data.decode("utf-8")
        return "utf-8"
    except UnicodeDecodeError:
        pass

    result = chardet.detect(raw_data)
    encoding = result.get("encoding") or "utf-8"
    confidence = result.get("confidence") or 0

    if confidence > MIN_CONFIDENCE:
        logger.debug(f"Detected encoding '{encoding}' (confidence: {confidence:.2f}) for {file_path}")
        if encoding.lower() == "ascii":
            return "utf-8"
        return encoding

    logger.warning(f"Could not detect encoding for {file_path}, defaulting to utf-8")
    return "utf-8"


def read_file_robust(file_path: Path, encoding: Optional[str] = None) -> str:
    """
    健壮地读取文件内容，自动处理编码问题

    Args:
        file_path: 文件路径
        encoding: 指定编码（如果为None则自动检测）

    Returns:
        文件内容字符串

    Raises:
        FileNotFoundError: 文件不存在
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")

    if encoding is None:
        encoding = detect_encoding(file_path)

    try:
        return file_path.read_text(encoding=encoding)
    except (UnicodeDecodeError, LookupError) as e:
        logger.warning(f"Failed to read {file_path} with {encoding}: {e}")

    for fallback_encoding in FALLBACK_ENCODINGS:
        if fallback_encoding == encoding:
            continue
        try:
            logger.debug(f"Trying fallback encoding: {fallback_encoding}")
            return file_path.read_text(encoding=fallback_encoding)
        except UnicodeDecodeError:
            continue

    # latin-1 never fails, so this is only reached for odd codecs
    return file_path.read_text(encoding="utf-8", errors="replace")


def write_file_robust(file_path: Path, content: str, encoding: str = "utf-8") -> bool:
    """
    写入文件内容

    Args:
        file_path: 文件路径
        content: 要写入的内容
        encoding: 编码格式

    Returns:
        是否成功
    """
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(content, encoding=encoding)
        logger.debug(f"Wrote file: {file_path} ({len(content)} chars)")
        return True
    except OSError as e:
        logger.error(f"Failed to write file {file_path}: {e}")
        return False
