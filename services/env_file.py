"""Environment file (.env) loading and validation."""

import io
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import dotenv_values
from loguru import logger
from pydantic import ValidationError

from models.stack_config import StackEnvironment, ENV_KEYS
from utils.encoding_utils import read_file_robust


def load_env_file(path: Path) -> Dict[str, Optional[str]]:
    """
    读取.env文件

    ``${VAR}`` references resolve against earlier keys in the file, the way
    compose resolves them.
    """
    path = Path(path)
    content = read_file_robust(path)
    values = dotenv_values(stream=io.StringIO(content), interpolate=True)
    logger.debug(f"Loaded {len(values)} keys from {path}")
    return dict(values)


def validate_env(mapping: Dict[str, Optional[str]]) -> List[str]:
    """
    校验环境变量集合

    Returns:
        问题列表，空列表表示通过
    """
    problems = []
    for key in ENV_KEYS:
        value = mapping.get(key)
        if value is None:
            problems.append(f"{key} is missing")
        elif not str(value).strip():
            problems.append(f"{key} is empty")

    if problems:
        return problems

    try:
        StackEnvironment.from_env_mapping(mapping)
    except ValidationError as e:
        for error in e.errors():
            problems.append(str(error.get("msg", error)))
    return problems


def read_stack_environment(path: Path) -> StackEnvironment:
    """
    读取并校验.env，返回StackEnvironment

    Raises:
        ValueError: 缺少键或违反约束
    """
    mapping = load_env_file(path)
    problems = validate_env(mapping)
    if problems:
        raise ValueError(f"Invalid environment file {path}: " + "; ".join(problems))
    return StackEnvironment.from_env_mapping(mapping)
