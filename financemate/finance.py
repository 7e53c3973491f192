import calendar
from datetime import date, datetime, timedelta


BUDGET_PERIOD_DAYS = {"weekly": 7, "monthly": 30, "yearly": 365}
ANNUAL_MULTIPLIERS = {
    "weekly": 52,
    "biweekly": 26,
    "monthly": 12,
    "bimonthly": 6,
    "quarterly": 4,
    "biannual": 2,
    "semiannual": 2,
    "annual": 1,
    "yearly": 1,
}
# (days, months) added per billing cycle
BILLING_STEPS = {
    "weekly": (7, 0),
    "biweekly": (14, 0),
    "monthly": (0, 1),
    "bimonthly": (0, 2),
    "quarterly": (0, 3),
    "biannual": (0, 6),
    "semiannual": (0, 6),
    "annual": (0, 12),
    "yearly": (0, 12),
}


def to_date(value):
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def money(value):
    return round(float(value or 0), 2)


def add_months(value, months):
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def budget_status(percent_used):
    if percent_used <= 50:
        return "good"
    if percent_used <= 75:
        return "warning"
    if percent_used <= 100:
        return "danger"
    return "exceeded"


def percent_used(amount, spending):
    if not amount or amount <= 0:
        return 0
    return round(spending / amount * 100)


def enrich_budget(budget, spending):
    spending = money(spending)
    used = percent_used(budget["amount"], spending)
    return {
        **budget,
        "currentSpending": spending,
        "percentUsed": used,
        "status": budget_status(used),
    }


def budget_days_in_period(budget):
    start = to_date(budget.get("start_date"))
    end = to_date(budget.get("end_date"))
    if budget.get("period") == "custom" and start and end:
        return (end - start).days + 1
    return BUDGET_PERIOD_DAYS.get(budget.get("period"), 30)


def budget_progress(budget, spending, today=None):
    today = today or date.today()
    enriched = enrich_budget(budget, spending)
    remaining = money(budget["amount"] - enriched["currentSpending"])
    days_in_period = budget_days_in_period(budget)
    end = to_date(budget.get("end_date"))
    days_remaining = (end - today).days + 1 if end else days_in_period
    daily_budget = money(remaining / max(days_remaining, 1))
    return {
        **enriched,
        "remaining": remaining,
        "daysInPeriod": days_in_period,
        "daysRemaining": max(days_remaining, 0),
        "dailyBudget": daily_budget if daily_budget > 0 else 0,
    }


def next_budget_period(budget):
    """Return the (start, end) dates of the period following ``budget``."""
    start = to_date(budget["start_date"])
    end = to_date(budget.get("end_date"))
    period = budget.get("period")
    if period == "weekly":
        new_start = (end or start + timedelta(days=6)) + timedelta(days=1)
        return new_start, new_start + timedelta(days=6)
    if period in ("monthly", "yearly"):
        months = 1 if period == "monthly" else 12
        new_start = add_months(start, months) if end is None else end + timedelta(days=1)
        return new_start, add_months(new_start, months) - timedelta(days=1)
    if end is None:
        raise ValueError("Custom budgets need an end date to be renewed")
    length = (end - start).days
    new_start = end + timedelta(days=1)
    return new_start, new_start + timedelta(days=length)


def goal_progress(goal, today=None):
    today = today or date.today()
    target = goal["target_amount"] or 0
    current = goal["current_amount"] or 0
    progress = min(100, round(current / target * 100)) if target > 0 else 0
    remaining = max(0, target - current)
    days_remaining = (to_date(goal["target_date"]) - today).days
    daily_needed = remaining / days_remaining if days_remaining > 0 and remaining > 0 else 0
    return {
        **goal,
        "progress_percentage": progress,
        "remaining_amount": money(remaining),
        "days_remaining": max(0, days_remaining),
        "is_overdue": days_remaining < 0 and not goal["is_completed"],
        "daily_amount_needed": money(daily_needed),
    }


def goal_detail(goal, today=None):
    today = today or date.today()
    detail = goal_progress(goal, today)
    target_date = to_date(goal["target_date"])
    created = to_date(goal.get("created_at")) or today
    days_total = (target_date - created).days
    days_left = max(0, (target_date - today).days)
    days_elapsed = days_total - days_left
    time_progress = min(100, round(days_elapsed / days_total * 100)) if days_total > 0 else 100

    contributions = goal.get("contributions") or []
    amounts = [float(item.get("amount") or 0) for item in contributions]
    recent = sorted(contributions, key=lambda item: item.get("date") or "", reverse=True)[:5]
    detail.update(
        time_progress_percentage=time_progress,
        days_total=days_total,
        days_elapsed=days_elapsed,
        total_contributions=len(contributions),
        average_contribution=money(sum(amounts) / len(amounts)) if amounts else 0,
        largest_contribution=max(amounts) if amounts else 0,
        recent_contributions=recent,
    )
    return detail


def annual_cost(amount, billing_cycle):
    return float(amount) * ANNUAL_MULTIPLIERS.get((billing_cycle or "").lower(), 12)


def advance_billing_date(value, billing_cycle):
    days, months = BILLING_STEPS.get((billing_cycle or "").lower(), (0, 1))
    if months:
        return add_months(value, months)
    return value + timedelta(days=days)


def next_billing_date(start_date, billing_cycle, today=None):
    """First billing date on or after ``today`` in the cycle anchored at ``start_date``."""
    today = today or date.today()
    anchor = to_date(start_date)
    days, months = BILLING_STEPS.get((billing_cycle or "").lower(), (0, 1))
    if anchor >= today:
        return anchor
    if days:
        steps = -(-(today - anchor).days // days)
        return anchor + timedelta(days=steps * days)
    # month arithmetic clamps to the anchor's day, so count from the anchor each time
    steps = 1
    candidate = add_months(anchor, months)
    while candidate < today:
        steps += 1
        candidate = add_months(anchor, months * steps)
    return candidate


def enrich_subscription(subscription, today=None):
    enriched = dict(subscription)
    if not enriched.get("next_billing_date"):
        enriched["next_billing_date"] = next_billing_date(
            enriched["start_date"], enriched["billing_cycle"], today
        ).isoformat()
    enriched["annual_cost"] = money(annual_cost(enriched["amount"], enriched["billing_cycle"]))
    return enriched


def days_until(value, today=None):
    today = today or date.today()
    return (to_date(value) - today).days


def subscription_stats(subscriptions, upcoming):
    total_annual = sum(annual_cost(sub["amount"], sub["billing_cycle"]) for sub in subscriptions)
    breakdown = {}
    for sub in subscriptions:
        entry = breakdown.setdefault(sub.get("category") or "Uncategorized", {
            "count": 0,
            "monthlyCost": 0.0,
            "annualCost": 0.0,
        })
        cost = annual_cost(sub["amount"], sub["billing_cycle"])
        entry["count"] += 1
        entry["monthlyCost"] += cost / 12
        entry["annualCost"] += cost
    for entry in breakdown.values():
        entry["monthlyCost"] = money(entry["monthlyCost"])
        entry["annualCost"] = money(entry["annualCost"])
    most_expensive = sorted(
        subscriptions,
        key=lambda sub: annual_cost(sub["amount"], sub["billing_cycle"]),
        reverse=True,
    )[:5]
    return {
        "totalCount": len(subscriptions),
        "totalMonthly": money(total_annual / 12),
        "totalAnnual": money(total_annual),
        "categoryBreakdown": breakdown,
        "mostExpensive": most_expensive,
        "upcomingRenewals": upcoming,
    }


def totals_by_type(transactions):
    income = sum(tx["amount"] for tx in transactions if tx["type"] == "income")
    expense = sum(tx["amount"] for tx in transactions if tx["type"] == "expense")
    return {
        "totalIncome": money(income),
        "totalExpense": money(expense),
        "balance": money(income - expense),
    }


def category_totals(transactions):
    totals = {}
    for tx in transactions:
        totals[tx["category"]] = totals.get(tx["category"], 0) + float(tx["amount"])
    stats = [{"category": name, "amount": money(amount)} for name, amount in totals.items()]
    return sorted(stats, key=lambda item: item["amount"], reverse=True)


def monthly_stats(transactions):
    months = [{"month": index + 1, "income": 0.0, "expense": 0.0} for index in range(12)]
    for tx in transactions:
        month = int(str(tx["date"])[5:7]) - 1
        if tx["type"] in ("income", "expense"):
            months[month][tx["type"]] += float(tx["amount"])
    return [
        {
            "month": item["month"],
            "income": money(item["income"]),
            "expense": money(item["expense"]),
            "balance": money(item["income"] - item["expense"]),
        }
        for item in months
    ]


def period_summary(transactions):
    daily = {}
    for tx in sorted(transactions, key=lambda item: item["date"]):
        day = daily.setdefault(str(tx["date"])[:10], {"income": 0.0, "expense": 0.0})
        if tx["type"] in ("income", "expense"):
            day[tx["type"]] += float(tx["amount"])
    return {
        "summary": totals_by_type(transactions),
        "categoryData": category_totals(transactions),
        "dailyData": [
            {
                "date": day,
                "income": money(values["income"]),
                "expense": money(values["expense"]),
                "balance": money(values["income"] - values["expense"]),
            }
            for day, values in daily.items()
        ],
    }
