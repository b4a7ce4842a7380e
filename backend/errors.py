# errors.py - Domain exceptions with FT-DOMAIN-NUMBER codes
"""
Every domain failure raised by the services carries a catalogue code and the
HTTP status the API layer answers with. ``main.py`` registers one handler for
the whole hierarchy, so routers raise these directly instead of building
HTTPException objects.
"""
from typing import Optional

# ============================================================
# ERROR CODE CATALOGUE
# FT-{DOMAIN}-{NUMBER}
# Domains: AUDIT, EVID, QUOTE, SYS
# ============================================================

ERROR_CATALOGUE = {
    # Audit trail
    "FT-AUDIT-001": {"message": "Entity not found", "severity": "info", "http_status": 404},
    "FT-AUDIT-002": {"message": "Invalid request", "severity": "info", "http_status": 400},
    "FT-AUDIT-003": {"message": "Audit write failed", "severity": "error", "http_status": 500},

    # Evidence packages & files
    "FT-EVID-001": {"message": "Unsafe evidence file path", "severity": "warning", "http_status": 400},
    "FT-EVID-002": {"message": "Evidence file not found", "severity": "info", "http_status": 404},
    "FT-EVID-003": {"message": "Generated file appears to be corrupt or empty", "severity": "error", "http_status": 500},
    "FT-EVID-004": {"message": "Unsupported file type", "severity": "info", "http_status": 400},
    "FT-EVID-005": {"message": "Evidence hash generation failed", "severity": "critical", "http_status": 500},
    "FT-EVID-006": {"message": "Evidence storage unavailable", "severity": "error", "http_status": 500},
    "FT-EVID-007": {"message": "Evidence export timed out", "severity": "error", "http_status": 504},

    # Quotes
    "FT-QUOTE-001": {"message": "Quote state does not allow this operation", "severity": "info", "http_status": 400},

    # System
    "FT-SYS-001": {"message": "Internal server error", "severity": "critical", "http_status": 500},
    "FT-SYS-002": {"message": "Feature not implemented", "severity": "info", "http_status": 501},
}


class FabTrackError(Exception):
    code = "FT-SYS-001"

    def __init__(self, detail: Optional[str] = None):
        entry = ERROR_CATALOGUE[self.code]
        self.detail = detail or entry["message"]
        self.http_status = entry["http_status"]
        self.severity = entry["severity"]
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        return {"detail": self.detail, "code": self.code}


class EntityNotFoundError(FabTrackError):
    code = "FT-AUDIT-001"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.title()} with ID {entity_id} not found")


class InvalidInputError(FabTrackError):
    code = "FT-AUDIT-002"


class AuditWriteFailure(FabTrackError):
    """Raised inside the audit dispatcher only; it is logged, never returned."""
    code = "FT-AUDIT-003"


class PathSafetyViolation(FabTrackError):
    code = "FT-EVID-001"


class EvidenceFileNotFound(FabTrackError):
    code = "FT-EVID-002"


class CorruptEvidenceFile(FabTrackError):
    code = "FT-EVID-003"


class UnsupportedEvidenceType(FabTrackError):
    code = "FT-EVID-004"


class HashGenerationError(FabTrackError):
    code = "FT-EVID-005"


class EvidenceStorageError(FabTrackError):
    code = "FT-EVID-006"


class EvidenceExportTimeout(FabTrackError):
    code = "FT-EVID-007"


class QuoteStateError(FabTrackError):
    code = "FT-QUOTE-001"


class NotImplementedFeature(FabTrackError):
    code = "FT-SYS-002"
