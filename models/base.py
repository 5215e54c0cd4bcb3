from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class RunMode(str, enum.Enum):
    """ETL run mode"""
    FULL = "full"
    INCREMENTAL = "incremental"


class RunStatus(str, enum.Enum):
    """Watermark row status"""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Borough(str, enum.Enum):
    """NYC boroughs accepted in service_requests.borough"""
    BRONX = "BRONX"
    BROOKLYN = "BROOKLYN"
    MANHATTAN = "MANHATTAN"
    QUEENS = "QUEENS"
    STATEN_ISLAND = "STATEN ISLAND"


def enum_values(enum_cls):
    """Persist enum values (not member names) in the database"""
    return [member.value for member in enum_cls]
