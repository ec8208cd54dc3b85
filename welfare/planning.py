"""
Distribution planners.

Both planners hand out whole points and round down, so the planned total
never exceeds the credits they were given. Entries that would receive zero
points are left out.
"""

from .models import PointDistribution


def plan_equal(employee_ids: list[str], available_credits: int) -> list[PointDistribution]:
    if not employee_ids or available_credits <= 0:
        return []
    per_employee = available_credits // len(employee_ids)
    if per_employee == 0:
        return []
    return [PointDistribution(employee_id=emp_id, points=per_employee) for emp_id in employee_ids]


def plan_proportional(current_points: dict[str, int], available_credits: int) -> list[PointDistribution]:
    """Split credits by each employee's share of the current point totals."""
    total_current = sum(current_points.values())
    if total_current <= 0:
        return plan_equal(list(current_points), available_credits)

    plan = []
    for emp_id, points in current_points.items():
        share = (available_credits * points) // total_current
        if share > 0:
            plan.append(PointDistribution(employee_id=emp_id, points=share))
    return plan
