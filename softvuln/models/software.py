from sqlalchemy import Column, Integer, String, DateTime, Enum, UniqueConstraint
from sqlalchemy.sql import func
from dataclasses import dataclass
from softvuln.core.database import Base
import enum

class VulnerabilitySource(enum.Enum):
    """Where a software vulnerability association came from"""
    NVD = "nvd"

class SoftwareCPE(Base):
    """CPE assigned to an installed software item by the inventory collector"""
    __tablename__ = "software_cpe"

    id = Column(Integer, primary_key=True, index=True)
    software_id = Column(Integer, nullable=False, index=True)
    cpe = Column(String(500), nullable=False)

    created_at = Column(DateTime, server_default=func.now())

    def __repr__(self):
        return f"<SoftwareCPE id={self.id} software_id={self.software_id} cpe={self.cpe!r}>"

class SoftwareVulnerability(Base):
    """Known CVE affecting a software item, refreshed on every reconciliation"""
    __tablename__ = "software_cve"

    id = Column(Integer, primary_key=True, index=True)
    software_id = Column(Integer, nullable=False, index=True)
    cve = Column(String(255), nullable=False, index=True)
    source = Column(Enum(VulnerabilitySource), nullable=False, default=VulnerabilitySource.NVD)

    # Last-seen marker, bumped on every upsert
    updated_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint('software_id', 'cve', 'source', name='uq_software_cve_source'),
    )

    def __repr__(self):
        return f"<SoftwareVulnerability software_id={self.software_id} cve={self.cve} source={self.source.value}>"

@dataclass(frozen=True)
class SoftwareVulnerabilityIn:
    """Association handed to the datastore upsert"""
    software_id: int
    cve: str

@dataclass(frozen=True)
class AffectedSoftware:
    """Newly created association reported back by a reconciliation run"""
    software_id: int
    cve: str

    def affected(self) -> int:
        """ID of the affected software item"""
        return self.software_id
