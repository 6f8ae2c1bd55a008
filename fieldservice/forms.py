"""
Form registry.

Closed mapping of form-type slugs (as used in URLs) to their ORM model and
the per-table policies that differ between forms.
"""
from dataclasses import dataclass
from typing import Dict, Optional, Type

from sqlalchemy import inspect as sa_inspect

from .errors import NotFoundError
from .models.models import (
    JobOrderRequest,
    DailyTimeSheet,
    DeutzCommissioningReport,
    DeutzServiceReport,
    EngineInspectionReceivingReport,
    SubmersiblePumpCommissioningReport,
    SubmersiblePumpServiceReport,
    SubmersiblePumpTeardownReport,
    ElectricSurfacePumpCommissioningReport,
    ElectricSurfacePumpServiceReport,
    ElectricSurfacePumpTeardownReport,
    EngineSurfacePumpCommissioningReport,
    EngineSurfacePumpServiceReport,
    EngineTeardownReport,
    ComponentsTeardownMeasuringReport,
)


# Delete policies
DELETE_BY_PERMISSION = "permission"  # form_records.delete through check_record_permission
DELETE_BY_ADMIN_ROLE = "admin_role"  # legacy users.role == "admin"

# Approval flows
FLOW_INLINE = "inline"  # approval columns live on the record itself
FLOW_REPORT = "report"  # separate Approval row per report


@dataclass(frozen=True)
class FormType:
    slug: str
    model: Type
    name: str
    job_order_field: str = "job_order"
    customer_field: str = "customer"
    delete_policy: str = DELETE_BY_PERMISSION
    approval_flow: str = FLOW_REPORT

    @property
    def table(self) -> str:
        return self.model.__tablename__

    @property
    def has_status(self) -> bool:
        return self.approval_flow == FLOW_INLINE

    @property
    def has_signatories(self) -> bool:
        return self.approval_flow == FLOW_REPORT


_FORM_TYPES = [
    FormType("job-order-request", JobOrderRequest, "Job Order Request",
             job_order_field="shop_field_jo_number", customer_field="full_customer_name",
             approval_flow=FLOW_INLINE),
    FormType("daily-time-sheet", DailyTimeSheet, "Daily Time Sheet",
             job_order_field="job_number", approval_flow=FLOW_INLINE),
    FormType("deutz-commissioning", DeutzCommissioningReport, "Deutz Commissioning Report"),
    FormType("deutz-service", DeutzServiceReport, "Deutz Service Report"),
    FormType("engine-inspection-receiving", EngineInspectionReceivingReport, "Engine Inspection / Receiving Report"),
    FormType("submersible-pump-commissioning", SubmersiblePumpCommissioningReport, "Submersible Pump Commissioning Report"),
    FormType("submersible-pump-service", SubmersiblePumpServiceReport, "Submersible Pump Service Report"),
    FormType("submersible-pump-teardown", SubmersiblePumpTeardownReport, "Submersible Pump Teardown Report"),
    FormType("electric-surface-pump-commissioning", ElectricSurfacePumpCommissioningReport, "Electric Surface Pump Commissioning Report"),
    FormType("electric-surface-pump-service", ElectricSurfacePumpServiceReport, "Electric Surface Pump Service Report"),
    FormType("electric-surface-pump-teardown", ElectricSurfacePumpTeardownReport, "Electric Surface Pump Teardown Report"),
    FormType("engine-surface-pump-commissioning", EngineSurfacePumpCommissioningReport, "Engine Surface Pump Commissioning Report",
             delete_policy=DELETE_BY_ADMIN_ROLE),
    FormType("engine-surface-pump-service", EngineSurfacePumpServiceReport, "Engine Surface Pump Service Report"),
    FormType("engine-teardown", EngineTeardownReport, "Engine Teardown Report"),
    FormType("components-teardown-measuring", ComponentsTeardownMeasuringReport, "Components Teardown Measuring Report"),
]

FORM_TYPES: Dict[str, FormType] = {ft.slug: ft for ft in _FORM_TYPES}
FORM_TYPES_BY_TABLE: Dict[str, FormType] = {ft.table: ft for ft in _FORM_TYPES}

# Tables whose noted_by/approved_by flags may be toggled by the designated signatory
SIGNATORY_TABLES = frozenset(ft.table for ft in _FORM_TYPES if ft.has_signatories)

# Columns the API never accepts from a request body
SYSTEM_COLUMNS = frozenset({
    "id", "created_by", "created_at", "updated_by", "updated_at", "deleted_at", "deleted_by",
    "approval_status",
    "level_1_approved_by", "level_1_approved_at", "level_1_notes",
    "level_2_approved_by", "level_2_approved_at", "level_2_notes",
    "jo_number", "shop_field_jo_number",
    "noted_by_checked", "approved_by_checked",
})


def get_form_type(slug: str) -> Optional[FormType]:
    return FORM_TYPES.get(slug)


def require_form_type(slug: str) -> FormType:
    form_type = FORM_TYPES.get(slug)
    if form_type is None:
        raise NotFoundError(f"Unknown form type: {slug}")
    return form_type


def editable_columns(model) -> Dict[str, object]:
    """Column name -> Column for every payload column a client may write."""
    mapper = sa_inspect(model)
    return {
        attr.key: attr.columns[0]
        for attr in mapper.column_attrs
        if attr.key not in SYSTEM_COLUMNS
    }
