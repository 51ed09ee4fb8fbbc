"""PricingPlanMixin — DB operations for saved pricing plans.

Plans are write-once per extraction run: saving for an owner replaces
every plan that owner had, inside a single transaction.
"""
import json

from pricing.models import ExtractedPlan, SavedPlan, now_iso

_INSERT_SQL = """INSERT INTO pricing_plans
    (owner_id, website_url, source_url, extracted_at,
     plan_name, price_amount, price_string, currency, price_frequency,
     billing_period, monthly_equivalent_amount, annual_billed_amount,
     included_units, features, evidence)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"""


def _plan_params(owner_id, plan, website_url, source_url, extracted_at):
    d = plan.to_dict()
    return (
        owner_id, website_url or "", source_url or "", extracted_at,
        plan.name, plan.price_amount, plan.price_string, plan.currency,
        plan.price_frequency, plan.billing_period,
        plan.monthly_equivalent_amount, plan.annual_billed_amount,
        json.dumps(d["included_units"]), json.dumps(d["features"]),
        json.dumps(d["evidence"]),
    )


def _row_to_saved_plan(row):
    plan = ExtractedPlan.from_dict({
        "name": row["plan_name"],
        "price_amount": row["price_amount"],
        "price_string": row["price_string"],
        "currency": row["currency"],
        "price_frequency": row["price_frequency"],
        "billing_period": row["billing_period"],
        "monthly_equivalent_amount": row["monthly_equivalent_amount"],
        "annual_billed_amount": row["annual_billed_amount"],
        "included_units": json.loads(row["included_units"] or "[]"),
        "features": json.loads(row["features"] or "[]"),
        "evidence": json.loads(row["evidence"] or "{}"),
    })
    return SavedPlan(
        id=row["id"],
        owner_id=row["owner_id"],
        website_url=row["website_url"] or "",
        source_url=row["source_url"] or "",
        extracted_at=row["extracted_at"],
        plan=plan,
    )


class PricingPlanMixin:
    """Database methods for saved pricing plans."""

    def create_pricing_plans(self, owner_id, plans, website_url="", source_url="",
                             extracted_at=None):
        """Insert plans for an owner. Returns the number inserted."""
        extracted_at = extracted_at or now_iso()
        rows = [_plan_params(owner_id, p, website_url, source_url, extracted_at) for p in plans]
        if not rows:
            return 0
        with self._get_conn() as conn:
            conn.executemany(_INSERT_SQL, rows)
        return len(rows)

    def delete_pricing_plans_by_owner(self, owner_id):
        """Delete every plan of an owner. Returns the number deleted."""
        with self._get_conn() as conn:
            cursor = conn.execute("DELETE FROM pricing_plans WHERE owner_id = ?", (owner_id,))
            return cursor.rowcount

    def replace_pricing_plans(self, owner_id, plans, website_url="", source_url=""):
        """Delete the owner's plans and insert *plans* in one transaction.

        Returns: number of plans saved
        """
        extracted_at = now_iso()
        rows = [_plan_params(owner_id, p, website_url, source_url, extracted_at) for p in plans]
        with self._get_conn() as conn:
            conn.execute("DELETE FROM pricing_plans WHERE owner_id = ?", (owner_id,))
            if rows:
                conn.executemany(_INSERT_SQL, rows)
        return len(rows)

    def get_pricing_plans(self, owner_id):
        """Saved plans of an owner, newest extraction first.

        Returns: list[SavedPlan]
        """
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT * FROM pricing_plans
                   WHERE owner_id = ?
                   ORDER BY extracted_at DESC, id ASC""",
                (owner_id,),
            ).fetchall()
        return [_row_to_saved_plan(r) for r in rows]

    def delete_pricing_plan(self, owner_id, plan_id):
        """Delete one plan, only if it belongs to the owner. Returns True if deleted."""
        with self._get_conn() as conn:
            cursor = conn.execute(
                "DELETE FROM pricing_plans WHERE id = ? AND owner_id = ?",
                (plan_id, owner_id),
            )
            return cursor.rowcount > 0

    def count_pricing_plans(self, owner_id):
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM pricing_plans WHERE owner_id = ?", (owner_id,)
            ).fetchone()
            return row[0]
