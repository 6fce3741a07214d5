"""
Snapshot collection.

Reads every record of each application data domain, in an order that
places parent tables before the tables referencing them so a restore can
replay the snapshot front to back.
"""
import abc
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Engine

from .logger import get_logger
from .metrics import DOMAIN_READ_FAILURES_TOTAL
from .utils import utcnow

logger = get_logger(__name__)

SNAPSHOT_VERSION = "1.0"


@dataclass(frozen=True)
class Domain:
    name: str
    table: str
    depends_on: Tuple[str, ...] = ()


BACKUP_DOMAINS: Tuple[Domain, ...] = (
    Domain("users", "users"),
    Domain("companies", "companies"),
    Domain("buildingCodes", "building_codes"),
    Domain("buildingComponents", "building_components"),
    Domain("deteriorationCurves", "deterioration_curves", ("buildingComponents",)),
    Domain("projects", "projects", ("users", "companies", "buildingCodes")),
    Domain("buildingSections", "building_sections", ("projects",)),
    Domain("assets", "assets", ("projects", "buildingSections")),
    Domain("assessments", "assessments", ("projects", "assets", "buildingComponents", "users")),
    Domain("deficiencies", "deficiencies", ("projects", "assessments")),
    Domain("photos", "photos", ("projects", "assessments", "deficiencies")),
    Domain("costEstimates", "cost_estimates", ("projects", "deficiencies")),
    Domain("maintenanceEntries", "maintenance_entries", ("projects", "assets", "buildingComponents")),
    Domain("projectDocuments", "project_documents", ("projects", "users")),
    Domain("assetDocuments", "asset_documents", ("assets", "users")),
    Domain("assessmentDocuments", "assessment_documents", ("assessments", "users")),
    Domain("riskAssessments", "risk_assessments", ("projects", "assets", "assessments")),
    Domain("optimizationScenarios", "optimization_scenarios", ("projects", "users")),
    Domain("capitalBudgetCycles", "capital_budget_cycles", ("companies", "users")),
    Domain("budgetAllocations", "budget_allocations", ("capitalBudgetCycles", "projects")),
    Domain("reportTemplates", "report_templates", ("users", "companies")),
    Domain("reportHistory", "report_history", ("reportTemplates", "projects", "users")),
    Domain("projectPermissions", "project_permissions", ("projects", "users")),
    Domain("conversations", "conversations", ("users", "projects")),
    Domain("customComponents", "custom_components", ("buildingComponents", "projects")),
    Domain("facilityModels", "facility_models", ("projects", "assets")),
    Domain("floorPlans", "floor_plans", ("projects", "assets")),
    Domain("accessRequests", "access_requests", ("users", "companies")),
    Domain("auditLog", "audit_log", ("users",)),
    Domain("portfolioMetricsHistory", "portfolio_metrics_history", ("companies",)),
    Domain("financialForecasts", "financial_forecasts", ("projects", "assets")),
    Domain("benchmarkData", "benchmark_data"),
    Domain("economicIndicators", "economic_indicators"),
    Domain("portfolioTargets", "portfolio_targets", ("companies", "users")),
    Domain("investmentAnalysis", "investment_analysis", ("projects", "assets")),
)


def check_domain_order(domains: Sequence[Domain]):
    """Raises ValueError when a domain is listed before one it depends on."""
    seen = set()
    for domain in domains:
        if domain.name in seen:
            raise ValueError(f"Domain '{domain.name}' is listed twice")
        missing = [dep for dep in domain.depends_on if dep not in seen]
        if missing:
            raise ValueError(f"Domain '{domain.name}' is listed before its dependencies: {missing}")
        seen.add(domain.name)


@dataclass
class SnapshotPayload:
    created_at: datetime
    encrypted: bool = False
    type: str = "scheduled"
    version: str = SNAPSHOT_VERSION
    tables: List[str] = field(default_factory=list)
    record_counts: Dict[str, int] = field(default_factory=dict)
    total_records: int = 0
    data: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    schedule_id: Optional[int] = None
    schedule_name: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "type": self.type,
            "encrypted": self.encrypted,
            "createdAt": self.created_at.isoformat() + "Z",
            "scheduleId": self.schedule_id,
            "scheduleName": self.schedule_name,
            "tables": list(self.tables),
            "recordCounts": dict(self.record_counts),
            "totalRecords": self.total_records,
            "data": self.data,
        }


class DataSource(abc.ABC):
    """Read access to the application data store."""

    @abc.abstractmethod
    def read_all(self, table: str) -> List[Dict[str, Any]]:
        pass


class SqlDataSource(DataSource):
    def __init__(self, engine: Engine):
        self.engine = engine

    def read_all(self, table: str) -> List[Dict[str, Any]]:
        quoted = self.engine.dialect.identifier_preparer.quote(table)
        with self.engine.connect() as connection:
            result = connection.execute(text(f"SELECT * FROM {quoted}"))
            return [dict(row) for row in result.mappings()]


class SnapshotCollector:
    def __init__(self, source: DataSource, domains: Sequence[Domain] = BACKUP_DOMAINS):
        check_domain_order(domains)
        self.source = source
        self.domains = tuple(domains)

    def collect(self, backup_type: str = "scheduled", encrypted: bool = False) -> SnapshotPayload:
        payload = SnapshotPayload(created_at=utcnow(), encrypted=encrypted, type=backup_type)

        for domain in self.domains:
            try:
                records = self.source.read_all(domain.table)
            except Exception as e:
                logger.warning(f"Could not back up domain '{domain.name}' (table '{domain.table}'): {e}")
                DOMAIN_READ_FAILURES_TOTAL.labels(domain=domain.name).inc()
                records = []

            payload.tables.append(domain.name)
            payload.data[domain.name] = records
            payload.record_counts[domain.name] = len(records)
            payload.total_records += len(records)

        logger.info(f"Collected {payload.total_records} records from {len(self.domains)} domains.")
        return payload
