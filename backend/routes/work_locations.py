from fastapi import APIRouter, Depends
from database import get_db
from routes.attendance import run_with_deadline
from services.work_location_resolver import WorkLocationResolver
from utils.error_codes import EmployeeNotFound

router = APIRouter(prefix="/api/work-locations", tags=["work_locations"])


async def _resolve_employee_locations(db, employee_id: str) -> list:
    employee = await db.employees.find_one({"id": employee_id}, {"_id": 0})
    if not employee:
        raise EmployeeNotFound(employee_id)
    return await WorkLocationResolver(db).resolve(employee)


@router.get("/employee/{employee_id}")
async def get_employee_locations(employee_id: str, db=Depends(get_db)):
    """Get all work locations an employee may check in at (multi-site or legacy)"""
    locations = await run_with_deadline(_resolve_employee_locations(db, employee_id))
    return {
        "employee_id": employee_id,
        "locations": [loc.model_dump() for loc in locations],
        "count": len(locations),
    }
