import random
from datetime import date, timedelta

from werkzeug.security import generate_password_hash

from . import BUDGET_SHARED_FIELDS, GOAL_SHARED_FIELDS, TRANSACTION_SHARED_FIELDS
from .finance import add_months, next_billing_date
from .mirror import SharedEntityMirror
from .repository import Where


DEMO_PASSWORD = "Demo1234"
DEMO_USERS = [
    ("alex@example.com", "Alex", "Martin"),
    ("sam@example.com", "Sam", "Martin"),
]
SAMPLE_EXPENSES = ["Food & Drinks", "Shopping", "Housing", "Transportation", "Entertainment", "Communication"]


def _ensure_user(repository, email, first_name, last_name):
    user = repository.users.find_one(Where().eq("email", email))
    if user is not None:
        return user
    return repository.users.insert({
        "email": email,
        "password_hash": generate_password_hash(DEMO_PASSWORD),
        "first_name": first_name,
        "last_name": last_name,
    })


def seed_sample_data(repository, days=90, seed=None):
    """Create two linked demo partners with a few months of shared and personal data."""
    rng = random.Random(seed)
    alex, sam = [_ensure_user(repository, *fields) for fields in DEMO_USERS]
    repository.users.update(Where().eq("id", alex["id"]), {"partner_id": sam["id"], "partner_email": sam["email"]})
    repository.users.update(Where().eq("id", sam["id"]), {"partner_id": alex["id"], "partner_email": alex["email"]})

    transactions = SharedEntityMirror(
        repository.transactions,
        TRANSACTION_SHARED_FIELDS,
        repository.partner_id,
    )
    start = date.today() - timedelta(days=days)
    created = 0
    for owner in (alex, sam):
        for month in range(days // 30 + 1):
            payday = add_months(start, month).replace(day=1)
            transactions.create(owner["id"], {
                "amount": 3200.0,
                "type": "income",
                "category": "Salary",
                "description": "Monthly salary",
                "date": payday.isoformat(),
                "tags": ["salary"],
            })
            created += 1
        for index in range(days // 3):
            category = rng.choice(SAMPLE_EXPENSES)
            shared = category == "Housing"
            transactions.create(owner["id"], {
                "amount": round(rng.uniform(5, 200), 2),
                "type": "expense",
                "category": category,
                "description": f"Sample expense {index + 1}",
                "date": (start + timedelta(days=index * 3)).isoformat(),
                "tags": ["household"] if shared else [],
            }, is_shared=shared)
            created += 1

    month_start = date.today().replace(day=1)
    SharedEntityMirror(
        repository.budgets,
        BUDGET_SHARED_FIELDS,
        repository.partner_id,
    ).create(alex["id"], {
        "name": "Groceries",
        "amount": 600.0,
        "category": "Food & Drinks",
        "period": "monthly",
        "start_date": month_start.isoformat(),
        "end_date": (add_months(month_start, 1) - timedelta(days=1)).isoformat(),
        "is_recurring": True,
        "description": "Shared grocery budget",
    }, is_shared=True)

    SharedEntityMirror(
        repository.goals,
        GOAL_SHARED_FIELDS,
        repository.partner_id,
    ).create(alex["id"], {
        "name": "Summer vacation",
        "description": "Two weeks by the sea",
        "target_amount": 4000.0,
        "current_amount": 0.0,
        "target_date": add_months(date.today(), 8).isoformat(),
        "category": "Travel",
        "contributions": [],
        "is_completed": False,
        "completion_date": None,
    }, is_shared=True)

    for owner, name, amount, cycle in (
        (alex, "Streaming", 15.99, "monthly"),
        (sam, "Gym", 45.0, "monthly"),
        (sam, "Cloud storage", 99.0, "annual"),
    ):
        started = start.isoformat()
        repository.subscriptions.insert({
            "user_id": owner["id"],
            "name": name,
            "amount": amount,
            "billing_cycle": cycle,
            "category": "Entertainment",
            "start_date": started,
            "next_billing_date": next_billing_date(started, cycle).isoformat(),
        })

    return {"emails": [alex["email"], sam["email"]], "password": DEMO_PASSWORD, "transactions": created}
