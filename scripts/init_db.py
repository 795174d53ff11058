import os
import sys
from decimal import Decimal
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.procurement.constants import PERMISSIONS, ROLE_DEFAULTS  # noqa: E402
from app.procurement.models import Permission, Role, User  # noqa: E402
from app.procurement.modules.approvals.models import ApprovalStep, ApprovalWorkflow  # noqa: E402
from app.procurement.modules.evaluations.models import EvaluationQuestion, ScoringType  # noqa: E402
from app.procurement.modules.evaluations.scoring import DEFAULT_WEIGHTS  # noqa: E402
from app.procurement.modules.invoices.models import WithholdingJobType  # noqa: E402
from app.procurement.modules.options.models import OptionItem  # noqa: E402
from app.procurement.db import engine_session  # noqa: E402

SCORING_TYPE_NAMES = {
    "malzeme": "Goods",
    "hizmet": "Services",
    "danismanlik": "Consulting",
    "bakim": "Maintenance and repair",
    "insaat": "Construction",
}

EVALUATION_QUESTIONS = (
    ("A", "Conformity to the technical specification"),
    ("A", "Rejection and return rate"),
    ("A", "Warranty and after-sales support"),
    ("A", "Certification and documentation"),
    ("B", "Price level and transparency"),
    ("B", "Payment terms"),
    ("B", "Flexibility on urgent requests"),
    ("B", "Communication and reporting"),
    ("C", "On-time delivery"),
    ("C", "Quantity accuracy"),
    ("C", "Packaging and undamaged delivery"),
    ("C", "Occupational health and safety compliance"),
)

# code, label, ratio, vat rate
WITHHOLDING_JOB_TYPES = (
    ("601", "Construction and repair works", "4/10", Decimal("20")),
    ("602", "Engineering and architecture services", "9/10", Decimal("20")),
    ("603", "Catering services", "5/10", Decimal("10")),
    ("604", "Cleaning services", "9/10", Decimal("20")),
    ("606", "Workforce supply services", "9/10", Decimal("20")),
    ("607", "Security services", "9/10", Decimal("20")),
    ("612", "Maintenance and repair of machinery", "7/10", Decimal("20")),
    ("615", "Transport services", "2/10", Decimal("20")),
)

# category -> labels, in display order
OPTION_ITEMS = {
    "birim": ("Purchasing", "Production", "IT", "Finance"),
    "durum": ("Draft", "Approved"),
    "paraBirimi": ("TRY", "USD", "EUR"),
    "birimTipi": ("pcs", "kg", "package", "box", "m", "lt"),
    "siparisDurumu": ("Draft", "Approved"),
    "alimYontemi": ("Direct purchase", "Tender"),
    "yonetmelikMaddesi": ("Article 22", "Article 19"),
    "projeKodu": ("GENERAL",),
    "butceKodu": ("OPEX", "CAPEX"),
}

REQUEST_WORKFLOW_STEPS = (
    (1, "Unit manager approval", ["unit_manager"]),
    (2, "Purchasing approval", ["purchasing"]),
)


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions, roles, the admin user and reference data idempotently.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@procurement.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///procurement.db").strip()

    with engine_session(db_url) as s:
        perms: dict[str, Permission] = {}
        for key, name in PERMISSIONS:
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            perms[key] = p

        roles: dict[str, Role] = {}
        for key, (name, perm_keys) in ROLE_DEFAULTS.items():
            role = s.query(Role).filter(Role.key == key).one_or_none()
            if not role:
                role = Role(key=key, name=name)
                s.add(role)
            for pk in perm_keys:
                if perms[pk] not in role.permissions:
                    role.permissions.append(perms[pk])
            roles[key] = role

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(email=admin_email, password_hash=generate_password_hash(admin_password), is_active=True, full_name="Administrator")
            s.add(user)
        if roles["admin"] not in user.roles:
            user.roles.append(roles["admin"])

        for code, (a, b, c) in DEFAULT_WEIGHTS.items():
            if not s.query(ScoringType).filter(ScoringType.code == code).count():
                s.add(ScoringType(code=code, name=SCORING_TYPE_NAMES[code], weight_a=a, weight_b=b, weight_c=c, is_active=True))

        if not s.query(EvaluationQuestion).count():
            for sort, (section, text) in enumerate(EVALUATION_QUESTIONS, start=1):
                s.add(EvaluationQuestion(section=section, text=text, sort=sort, is_active=True))

        for sort, (code, label, ratio, vat_rate) in enumerate(WITHHOLDING_JOB_TYPES, start=1):
            if not s.query(WithholdingJobType).filter(WithholdingJobType.code == code).count():
                s.add(WithholdingJobType(code=code, label=label, ratio=ratio, vat_rate=vat_rate, is_active=True, sort=sort))

        for category, labels in OPTION_ITEMS.items():
            if s.query(OptionItem).filter(OptionItem.category == category).count():
                continue
            for sort, label in enumerate(labels, start=1):
                s.add(OptionItem(category=category, label=label, sort=sort, active=True))

        has_global = (
            s.query(ApprovalWorkflow)
            .filter(ApprovalWorkflow.entity_type == "Request", ApprovalWorkflow.department_id.is_(None))
            .count()
        )
        if not has_global:
            wf = ApprovalWorkflow(name="Default request approval", entity_type="Request", department_id=None, is_active=True)
            for order, name, approver_roles in REQUEST_WORKFLOW_STEPS:
                wf.steps.append(ApprovalStep(step_order=order, name=name, approver_roles=approver_roles, min_approvals=1))
            s.add(wf)

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
