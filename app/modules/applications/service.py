from supabase import Client
from app.modules.applications.schemas import ApplicationCreate, ApplicationResponse, ApplicationStatus
from typing import List, Optional, Dict, Any
from datetime import datetime
from enum import Enum
from fastapi import HTTPException
import logging

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Deployment cancelled by user"


def log_line(message: str) -> str:
    return f"[{datetime.utcnow().isoformat()}Z] {message}"


class ApplicationService:
    def __init__(self, supabase: Client):
        self.supabase = supabase

    def create_application(self, app_data: ApplicationCreate, user_id: str, region: str) -> ApplicationResponse:
        """Create a new application record in pending state"""
        try:
            payload = app_data.model_dump(mode="json", exclude_none=True)
            payload.update({
                "user_id": user_id,
                "region": app_data.region or region,
                "ec2": payload.get("ec2") or {},
                "aws": payload.get("aws") or {},
                "status": ApplicationStatus.PENDING.value,
                "deployment_logs": [log_line("Application created")],
                "run_version": 0,
                "created_at": datetime.utcnow().isoformat()
            })
            result = self.supabase.table("applications").insert(payload).execute()

            if not result.data:
                raise HTTPException(status_code=500, detail="Failed to create application")

            return ApplicationResponse(**result.data[0])
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error creating application: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def get_application_by_id(self, application_id: str) -> ApplicationResponse:
        """Get application by ID"""
        try:
            result = self.supabase.table("applications")\
                .select("*")\
                .eq("id", application_id)\
                .maybe_single()\
                .execute()

            if not result or not result.data:
                raise HTTPException(status_code=404, detail="Application not found")

            return ApplicationResponse(**result.data)
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error getting application: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def list_applications(self, user_id: str) -> List[ApplicationResponse]:
        """List a user's applications, newest first"""
        try:
            result = self.supabase.table("applications")\
                .select("*")\
                .eq("user_id", user_id)\
                .order("created_at", desc=True)\
                .execute()
            return [ApplicationResponse(**row) for row in result.data]
        except Exception as e:
            logger.error(f"Error listing applications: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def update_application(
        self,
        application_id: str,
        status: Optional[ApplicationStatus] = None,
        expected_version: Optional[int] = None,
        **fields: Any
    ) -> Optional[ApplicationResponse]:
        """
        Update status and any other columns passed as keyword arguments.
        With ``expected_version`` the write only applies while the record's
        run_version still matches; None is returned when it did not apply.
        """
        try:
            update_data: Dict[str, Any] = {"updated_at": datetime.utcnow().isoformat()}
            if status is not None:
                update_data["status"] = ApplicationStatus(status).value
            for key, value in fields.items():
                if isinstance(value, datetime):
                    value = value.isoformat()
                elif isinstance(value, Enum):
                    value = value.value
                update_data[key] = value

            query = self.supabase.table("applications")\
                .update(update_data)\
                .eq("id", application_id)
            if expected_version is not None:
                query = query.eq("run_version", expected_version)
            result = query.execute()

            if result.data and len(result.data) > 0:
                return ApplicationResponse(**result.data[0])
            return None
        except Exception as e:
            logger.error(f"Error updating application: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def merge_section(
        self,
        application_id: str,
        section: str,
        values: Dict[str, Any],
        expected_version: Optional[int] = None
    ) -> bool:
        """Merge values into one of the jsonb sections (ec2, aws, runtime). Returns False if the run was superseded."""
        current = self.get_application_by_id(application_id)
        if expected_version is not None and current.run_version != expected_version:
            return False
        merged = getattr(current, section).model_dump()
        merged.update({k: v for k, v in values.items() if v is not None})
        updated = self.update_application(application_id, expected_version=expected_version, **{section: merged})
        return updated is not None or expected_version is None

    def append_logs(
        self,
        application_id: str,
        messages: List[str],
        status: Optional[ApplicationStatus] = None,
        expected_version: Optional[int] = None,
        **fields: Any
    ) -> bool:
        """
        Append timestamped lines to deployment_logs, optionally updating status
        and other columns in the same write. Returns False if ``expected_version``
        no longer matches the record, in which case nothing was written.
        """
        current = self.get_application_by_id(application_id)
        if expected_version is not None and current.run_version != expected_version:
            return False
        logs = list(current.deployment_logs or []) + [log_line(m) for m in messages]
        updated = self.update_application(
            application_id,
            status=status,
            expected_version=expected_version,
            deployment_logs=logs,
            **fields
        )
        return updated is not None or expected_version is None

    def reset_for_redeploy(self, application_id: str) -> int:
        """Back to pending with a fresh log. Returns the new run version."""
        current = self.get_application_by_id(application_id)
        version = (current.run_version or 0) + 1
        self.update_application(
            application_id,
            status=ApplicationStatus.PENDING,
            error_message="",
            deployment_logs=[log_line("Redeployment initiated")],
            run_version=version
        )
        return version

    def mark_cancelled(self, application_id: str) -> int:
        """Fail the current run as cancelled. Returns the new run version."""
        current = self.get_application_by_id(application_id)
        version = (current.run_version or 0) + 1
        logs = list(current.deployment_logs or []) + [log_line(CANCELLED_MESSAGE)]
        self.update_application(
            application_id,
            status=ApplicationStatus.FAILED,
            error_message=CANCELLED_MESSAGE,
            deployment_logs=logs,
            run_version=version
        )
        return version

    def delete_application(self, application_id: str) -> None:
        """Remove the record only; cloud resources are not touched"""
        try:
            self.supabase.table("applications")\
                .delete()\
                .eq("id", application_id)\
                .execute()
        except Exception as e:
            logger.error(f"Error deleting application: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))
