from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

MIB = 1024 * 1024
DEFAULT_MAX_FILE_SIZE = 100 * MIB
DEFAULT_MAX_PARSE_SIZE = 10 * MIB
DEFAULT_SHELL_TIMEOUT_MS = 30_000
DEFAULT_SHELL_MAX_OUTPUT_CHARS = 200_000


class FileSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    workflow_dir: str = ""
    output_dir: str = ""
    temp_dir: str = ""
    allowed_roots: list[str] = Field(default_factory=list)
    allow_symlinks: bool = False
    allow_absolute: bool = False
    max_file_size: int = Field(default=DEFAULT_MAX_FILE_SIZE, gt=0)
    max_parse_size: int = Field(default=DEFAULT_MAX_PARSE_SIZE, gt=0)
    create_parents: bool = True
    fsync_writes: bool = False
    read_fallback_to_text: bool = False
    quotas: dict[str, int] = Field(default_factory=dict)
    quota_warn_threshold: float = Field(default=0.8, gt=0.0, le=1.0)
    quota_error_threshold: float = Field(default=0.95, gt=0.0, le=1.0)

    @model_validator(mode="after")
    def _thresholds_ordered(self) -> "FileSettings":
        if self.quota_warn_threshold > self.quota_error_threshold:
            raise ValueError("quota_warn_threshold must not exceed quota_error_threshold")
        return self


class ShellSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    work_dir: str = ""
    timeout_ms: int = Field(default=DEFAULT_SHELL_TIMEOUT_MS, gt=0)
    env: dict[str, str] = Field(default_factory=dict)
    max_output_chars: int = Field(default=DEFAULT_SHELL_MAX_OUTPUT_CHARS, gt=0)


class UtilitySettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    test_seed: int | None = None
    max_array_size: int = Field(default=10_000, gt=0)
    max_id_length: int = Field(default=256, gt=0)


class AppConfig(BaseModel):
    file: FileSettings = Field(default_factory=FileSettings)
    shell: ShellSettings = Field(default_factory=ShellSettings)
    utility: UtilitySettings = Field(default_factory=UtilitySettings)
    audit_enabled: bool = True
