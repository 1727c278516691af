"""PHP upload limit policy (uploads.ini)."""

import re
from typing import Optional, List, Literal
from pydantic import BaseModel, Field, validator

from utils.size_units import parse_size


INI_LINE_PATTERN = re.compile(r"^\s*([A-Za-z_.]+)\s*=\s*(.*?)\s*$")
INI_TRUE = {"on", "1", "true", "yes"}
INI_FALSE = {"off", "0", "false", "no", ""}


class UploadVerdict(BaseModel):
    """Outcome of pushing one upload through nginx and PHP."""

    accepted: bool = Field(..., description="是否接受")
    rejected_by: Optional[Literal["nginx", "php"]] = Field(default=None, description="拒绝的层")
    limit_name: Optional[str] = Field(default=None, description="触发的限制项")
    limit_bytes: Optional[int] = Field(default=None, description="限制值（字节）")
    status_code: int = Field(default=200, description="HTTP状态码")


class UploadPolicy(BaseModel):
    """PHP运行时上传限制，对应用服务处理的每个请求统一生效."""

    file_uploads: bool = Field(default=True, description="允许文件上传")
    memory_limit: str = Field(default="256M", description="内存上限")
    upload_max_filesize: str = Field(default="64M", description="单文件上限")
    post_max_size: str = Field(default="64M", description="POST请求体上限")
    max_execution_time: int = Field(default=600, ge=0, description="执行时间上限（秒）")

    class Config:
        validate_assignment = True
        extra = "forbid"

    @validator("upload_max_filesize", "post_max_size")
    def validate_size(cls, v: str) -> str:
        """验证大小格式."""
        parse_size(v)
        return str(v).strip()

    @validator("memory_limit")
    def validate_memory_limit(cls, v: str) -> str:
        # -1 disables the memory ceiling in php.ini
        if str(v).strip() == "-1":
            return "-1"
        parse_size(v)
        return str(v).strip()

    @property
    def upload_max_bytes(self) -> int:
        return parse_size(self.upload_max_filesize)

    @property
    def post_max_bytes(self) -> int:
        return parse_size(self.post_max_size)

    @property
    def memory_limit_bytes(self) -> Optional[int]:
        """None when the memory ceiling is disabled."""
        if self.memory_limit == "-1":
            return None
        return parse_size(self.memory_limit)

    def effective_upload_limit(self) -> int:
        """
        有效的单文件上传上限

        Returns:
            The smaller non-zero of upload_max_filesize and post_max_size,
            or 0 when both are unlimited.
        """
        limits = [b for b in (self.upload_max_bytes, self.post_max_bytes) if b > 0]
        return min(limits) if limits else 0

    def check_upload(self, file_size: int, request_size: Optional[int] = None,
                     proxy_limit: Optional[int] = None) -> UploadVerdict:
        """
        判断一次上传是否会被接受

        Args:
            file_size: 上传文件大小（字节）
            request_size: 整个请求体大小，默认等于文件大小
            proxy_limit: nginx client_max_body_size（字节），0或None表示不限制

        Nginx sees the request first and answers 413 on its own. PHP then
        drops the whole body past post_max_size, and a single file past
        upload_max_filesize.
        """
        if file_size < 0:
            raise ValueError("file_size must not be negative")
        body = file_size if request_size is None else request_size

        if proxy_limit and body > proxy_limit:
            return UploadVerdict(
                accepted=False, rejected_by="nginx", limit_name="client_max_body_size",
                limit_bytes=proxy_limit, status_code=413
            )

        if not self.file_uploads:
            return UploadVerdict(
                accepted=False, rejected_by="php", limit_name="file_uploads",
                limit_bytes=0, status_code=400
            )

        post_max = self.post_max_bytes
        if post_max and body > post_max:
            return UploadVerdict(
                accepted=False, rejected_by="php", limit_name="post_max_size",
                limit_bytes=post_max, status_code=400
            )

        upload_max = self.upload_max_bytes
        if upload_max and file_size > upload_max:
            return UploadVerdict(
                accepted=False, rejected_by="php", limit_name="upload_max_filesize",
                limit_bytes=upload_max, status_code=400
            )

        return UploadVerdict(accepted=True)

    def consistency_warnings(self, proxy_limit: Optional[int] = None) -> List[str]:
        """Limit combinations that make uploads fail below the advertised maximum."""
        warnings = []
        upload_max = self.upload_max_bytes
        post_max = self.post_max_bytes

        if post_max and (upload_max == 0 or post_max < upload_max):
            warnings.append(
                f"post_max_size ({self.post_max_size}) is smaller than "
                f"upload_max_filesize ({self.upload_max_filesize})"
            )

        memory = self.memory_limit_bytes
        if memory is not None and post_max and memory < post_max:
            warnings.append(
                f"memory_limit ({self.memory_limit}) is smaller than post_max_size ({self.post_max_size})"
            )

        php_limit = self.effective_upload_limit()
        if proxy_limit and (php_limit == 0 or proxy_limit < php_limit):
            warnings.append(
                f"nginx client_max_body_size ({proxy_limit} bytes) is smaller than "
                f"the PHP upload limit ({php_limit or 'unlimited'} bytes)"
            )

        if not self.file_uploads:
            warnings.append("file_uploads is Off, every upload will be rejected")

        return warnings

    def to_ini(self) -> str:
        """生成uploads.ini内容."""
        return (
            f"file_uploads = {'On' if self.file_uploads else 'Off'}\n"
            f"memory_limit = {self.memory_limit}\n"
            f"upload_max_filesize = {self.upload_max_filesize}\n"
            f"post_max_size = {self.post_max_size}\n"
            f"max_execution_time = {self.max_execution_time}\n"
        )

    @classmethod
    def from_ini(cls, text: str) -> "UploadPolicy":
        """
        解析uploads.ini内容

        Unknown keys are ignored, they belong to PHP and not to this policy.
        """
        values = {}
        for raw_line in text.splitlines():
            line = raw_line.split(";", 1)[0].strip()
            if not line or line.startswith("#") or line.startswith("["):
                continue
            match = INI_LINE_PATTERN.match(line)
            if not match:
                continue
            key, value = match.group(1), match.group(2).strip().strip('"')
            if key not in cls.__fields__:
                continue
            if key == "file_uploads":
                lowered = value.lower()
                if lowered not in INI_TRUE | INI_FALSE:
                    raise ValueError(f"Invalid file_uploads value: {value}")
                values[key] = lowered in INI_TRUE
            elif key == "max_execution_time":
                values[key] = int(value)
            else:
                values[key] = value
        return cls(**values)
