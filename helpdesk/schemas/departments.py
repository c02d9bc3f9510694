from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, SecretStr


class DepartmentBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    active: bool = True
    sync_enabled: bool = False
    sync_interval: int = Field(300, ge=30, le=86400)
    imap_host: str | None = Field(default=None, max_length=255)
    imap_port: int = Field(993, ge=1, le=65535)
    imap_user: str | None = Field(default=None, max_length=255)
    imap_secure: bool = True
    imap_folder: str = Field("INBOX", max_length=255)
    smtp_host: str | None = Field(default=None, max_length=255)
    smtp_port: int = Field(587, ge=1, le=65535)
    smtp_user: str | None = Field(default=None, max_length=255)
    smtp_secure: bool = False
    auto_reply_enabled: bool = True
    ticket_prefix: str | None = Field(default=None, max_length=16, pattern=r"^[A-Za-z0-9]*$")
    group_name: str | None = Field(default=None, max_length=255)


class DepartmentCreate(DepartmentBase):
    imap_password: SecretStr | None = None
    smtp_password: SecretStr | None = None


class DepartmentUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    active: bool | None = None
    sync_enabled: bool | None = None
    sync_interval: int | None = Field(default=None, ge=30, le=86400)
    imap_host: str | None = Field(default=None, max_length=255)
    imap_port: int | None = Field(default=None, ge=1, le=65535)
    imap_user: str | None = Field(default=None, max_length=255)
    imap_password: SecretStr | None = None
    imap_secure: bool | None = None
    imap_folder: str | None = Field(default=None, max_length=255)
    smtp_host: str | None = Field(default=None, max_length=255)
    smtp_port: int | None = Field(default=None, ge=1, le=65535)
    smtp_user: str | None = Field(default=None, max_length=255)
    smtp_password: SecretStr | None = None
    smtp_secure: bool | None = None
    auto_reply_enabled: bool | None = None
    ticket_prefix: str | None = Field(default=None, max_length=16, pattern=r"^[A-Za-z0-9]*$")
    group_name: str | None = Field(default=None, max_length=255)


class DepartmentResponse(BaseModel):
    id: int
    name: str
    description: str | None = None
    active: bool
    sync_enabled: bool
    sync_interval: int
    imap_host: str | None = None
    imap_port: int
    imap_user: str | None = None
    imap_secure: bool
    imap_folder: str
    has_imap_password: bool = False
    smtp_host: str | None = None
    smtp_port: int
    smtp_user: str | None = None
    smtp_secure: bool
    has_smtp_password: bool = False
    auto_reply_enabled: bool
    ticket_prefix: str | None = None
    group_name: str | None = None
    last_sync: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {
        "from_attributes": True,
    }


class ConnectionTestResponse(BaseModel):
    imap: bool
    smtp: bool
