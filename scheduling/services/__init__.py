from scheduling.services.appointment_service import AppointmentService
from scheduling.services.maintenance_orchestrator import ResourceMaintenanceOrchestrator

__all__ = ["AppointmentService", "ResourceMaintenanceOrchestrator"]
