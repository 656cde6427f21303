from typing import Optional


class LocalFirstError(Exception):
    """
    Erro base do motor local-first.
    Carrega opcionalmente o id da entidade que causou a falha.
    """
    retryable = False

    def __init__(self, message: str, entity_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id

    def __str__(self) -> str:
        if self.entity_id:
            return f"{self.message} (entity={self.entity_id})"
        return self.message


class ValidationError(LocalFirstError):
    """Entidade malformada. Falha imediata, nunca é re-tentada."""


class NotFoundError(LocalFirstError):
    """Operação sobre um id desconhecido."""


class NetworkError(LocalFirstError):
    """Falha transitória de rede; o motor re-tenta até max_retries."""
    retryable = True


class ConflictError(LocalFirstError):
    """Conflito que exige decisão do usuário (política 'manual')."""


class SyncTimeoutError(LocalFirstError, TimeoutError):
    """A execução ultrapassou sync_timeout. A fila é preservada."""
    retryable = True


class ConfigError(LocalFirstError):
    """Valor de configuração fora do domínio ou opção desconhecida."""


class EngineStateError(LocalFirstError):
    """Chamada fora do ciclo de vida (ex: set_enabled antes de initialize)."""
