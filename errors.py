"""
=============================================================================
ERRORS.PY — Errores del núcleo de contabilidad
=============================================================================
Cada error lleva:
  - code        → identificador estable para el cliente ("already_claimed")
  - status_code → código HTTP con el que main.py lo devuelve

Las reglas puras (gamification.py) solo lanzan InvalidInputError, y solo
cuando reciben datos fuera de su dominio. El resto los lanza accounting.py.
"""


class VoloError(Exception):
    """Base de todos los errores del dominio"""
    code = "volo_error"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class InvalidInputError(VoloError):
    """Cantidades negativas, fechas imposibles, parámetros fuera de rango"""
    code = "invalid_input"
    status_code = 400


class NotFoundError(VoloError):
    code = "not_found"
    status_code = 404


class AlreadyClaimedError(VoloError):
    """La recompensa del desafío ya se cobró"""
    code = "already_claimed"
    status_code = 409


class NotCompletedError(VoloError):
    """Se intentó cobrar un desafío que no está completado"""
    code = "not_completed"
    status_code = 400


class ConcurrentUpdateConflict(VoloError):
    """
    Otra petición modificó la fila del usuario entre la lectura y la escritura.
    Se reintenta con estado FRESCO (accounting.run_with_retry), nunca con
    los valores viejos.
    """
    code = "concurrent_update"
    status_code = 409


class HeartsFullError(VoloError):
    """Se pidió recuperar un corazón con todos los corazones llenos"""
    code = "hearts_full"
    status_code = 400


class CooldownActiveError(VoloError):
    """
    La recuperación de corazones aún está en enfriamiento.
    retry_after → segundos que faltan (main.py lo manda en Retry-After)
    """
    code = "cooldown_active"
    status_code = 429

    def __init__(self, message: str = "", retry_after: int = 0):
        super().__init__(message)
        self.retry_after = retry_after
