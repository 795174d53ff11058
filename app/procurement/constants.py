"""
Central constants: the permission catalog and the default role bundles.
"""
from __future__ import annotations

PERMISSIONS: tuple[tuple[str, str], ...] = (
    ("admin.view", "Admin: view shell"),
    ("audit.view", "Audit: view log"),
    ("data.view_all", "Data: view all departments"),
    ("settings.edit", "Settings: edit workflows, questions and lookups"),
    ("users.manage", "Users: invite users to the tenant"),
    ("org.view", "Organization: view"),
    ("org.manage", "Organization: manage departments and companies"),
    ("budgets.view", "Budgets: view"),
    ("budgets.manage", "Budgets: manage"),
    ("suppliers.view", "Suppliers: view"),
    ("suppliers.create", "Suppliers: create"),
    ("suppliers.edit", "Suppliers: edit"),
    ("suppliers.approve", "Suppliers: approve registrations"),
    ("requests.view", "Requests: view"),
    ("requests.create", "Requests: create"),
    ("requests.edit", "Requests: edit"),
    ("requests.approve", "Requests: approve"),
    ("requests.assign", "Requests: assign responsible"),
    ("rfq.view", "RFQ: view"),
    ("rfq.create", "RFQ: create"),
    ("rfq.edit", "RFQ: edit"),
    ("rfq.manage", "RFQ: manage invitations"),
    ("rfq.approve", "RFQ: approve"),
    ("rfq.finalize", "RFQ: award and create orders"),
    ("orders.view", "Orders: view"),
    ("orders.create", "Orders: create"),
    ("orders.create_unlinked", "Orders: create without a request"),
    ("orders.edit", "Orders: edit"),
    ("deliveries.view", "Deliveries: view"),
    ("deliveries.create", "Deliveries: create"),
    ("deliveries.approve", "Deliveries: approve"),
    ("invoices.view", "Invoices: view"),
    ("invoices.create", "Invoices: create"),
    ("invoices.edit", "Invoices: edit"),
    ("contracts.view", "Contracts: view"),
    ("contracts.create", "Contracts: create"),
    ("contracts.edit", "Contracts: edit"),
    ("contracts.delete", "Contracts: delete"),
    ("evaluations.view", "Evaluations: view"),
    ("evaluations.submit", "Evaluations: submit"),
    ("reports.view", "Reports: view"),
)

PERMISSION_KEYS = frozenset(k for k, _ in PERMISSIONS)

# Role key -> (display name, permission keys). "admin" gets everything.
ROLE_DEFAULTS: dict[str, tuple[str, tuple[str, ...]]] = {
    "admin": ("Administrator", tuple(k for k, _ in PERMISSIONS)),
    "purchasing": (
        "Purchasing",
        (
            "admin.view",
            "data.view_all",
            "org.view",
            "budgets.view",
            "suppliers.view",
            "suppliers.create",
            "suppliers.edit",
            "suppliers.approve",
            "requests.view",
            "requests.approve",
            "requests.assign",
            "rfq.view",
            "rfq.create",
            "rfq.edit",
            "rfq.manage",
            "rfq.approve",
            "rfq.finalize",
            "orders.view",
            "orders.create",
            "orders.create_unlinked",
            "orders.edit",
            "deliveries.view",
            "invoices.view",
            "contracts.view",
            "contracts.create",
            "contracts.edit",
            "evaluations.view",
            "evaluations.submit",
            "reports.view",
        ),
    ),
    "unit_manager": (
        "Unit Manager",
        (
            "admin.view",
            "org.view",
            "budgets.view",
            "requests.view",
            "requests.create",
            "requests.edit",
            "requests.approve",
            "orders.view",
            "deliveries.view",
            "evaluations.view",
            "evaluations.submit",
            "reports.view",
        ),
    ),
    "finance": (
        "Finance",
        (
            "admin.view",
            "data.view_all",
            "org.view",
            "budgets.view",
            "budgets.manage",
            "orders.view",
            "deliveries.view",
            "invoices.view",
            "invoices.create",
            "invoices.edit",
            "contracts.view",
            "reports.view",
        ),
    ),
    "warehouse": (
        "Warehouse",
        (
            "admin.view",
            "data.view_all",
            "orders.view",
            "deliveries.view",
            "deliveries.create",
            "deliveries.approve",
        ),
    ),
    "requester": (
        "Requester",
        (
            "admin.view",
            "requests.view",
            "requests.create",
        ),
    ),
}
