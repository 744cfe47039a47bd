"""Configuração central baseada em variáveis de ambiente."""

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Valores globais lidos de `.env` ou do ambiente."""

    environment: str = "development"
    log_level: str | None = Field(
        default=None,
        description="Nível global de logging (ex. debug, info, warning). Sem valor, usa o padrão do ambiente.",
    )
    request_log_skip_prefixes: tuple[str, ...] = Field(
        default=("/health", "/api/health", "/favicon", "/docs", "/openapi"),
        description="Prefixos de rota que não geram eventos request.started/completed.",
    )
    log_file_path: str = "logs/api.log"
    supabase_url: str | None = None
    supabase_service_role: str | None = None
    # Aceita as variantes comuns da anon key
    supabase_anon: str | None = Field(
        default=None,
        validation_alias=AliasChoices("CRM_SUPABASE_ANON", "SUPABASE_ANON_KEY", "SUPABASE_ANON"),
    )
    send_cooldown_ms: int = Field(
        default=5000,
        ge=0,
        description="Intervalo mínimo entre envios aceitos na mesma instância.",
    )
    message_poll_interval_ms: int = Field(
        default=3000,
        gt=0,
        description="Polling de segurança da lista de mensagens, independente do realtime.",
    )
    conversation_poll_interval_ms: int = Field(
        default=5000,
        gt=0,
        description="Polling de segurança da lista de conversas.",
    )
    realtime_heartbeat_seconds: float = Field(default=25.0, gt=0)
    http_timeout_seconds: float = Field(default=15.0, gt=0)
    media_max_bytes: int = Field(
        default=16 * 1024 * 1024,
        gt=0,
        description="Tamanho máximo aceito para mídia enviada pelo inbox.",
    )
    model_config = SettingsConfigDict(env_file=".env", env_prefix="CRM_", extra="allow")


settings = Settings()
