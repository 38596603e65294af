"""
Analytics - dashboard and spending aggregations over one ingestion session.

Callers pass the records of an explicit session (see TransactionStore.records_for_session);
nothing here looks up a "current" session on its own.
"""
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

import pandas as pd

from .etl.models import ExtractedTransaction

TIMEFRAMES = ("week", "month", "year", "all")


def to_frame(records: List[ExtractedTransaction]) -> pd.DataFrame:
    columns = ["id", "date", "amount", "category", "merchant", "created_at"]
    if not records:
        return pd.DataFrame(columns=columns).astype({"amount": float})
    df = pd.DataFrame([{
        "id": r.id,
        "date": pd.Timestamp(r.date),
        "amount": float(r.amount),
        "category": r.category,
        "merchant": r.merchant,
        "created_at": r.created_at or "",
    } for r in records])
    return df


def _money(value) -> float:
    return round(float(value), 2)


def _summarize(df: pd.DataFrame) -> Dict[str, Any]:
    income = df.loc[df["amount"] > 0, "amount"].sum()
    expenses = df.loc[df["amount"] < 0, "amount"].abs().sum()
    return {
        "totalIncome": _money(income),
        "totalExpenses": _money(expenses),
        "netBalance": _money(income - expenses),
        "transactionCount": int(len(df)),
    }


def _month_mask(df: pd.DataFrame, year: int, month: int) -> pd.Series:
    return (df["date"].dt.year == year) & (df["date"].dt.month == month)


def category_breakdown(df: pd.DataFrame, limit: int = 10) -> List[Dict[str, Any]]:
    expenses = df[df["amount"] < 0].assign(spent=lambda d: d["amount"].abs())
    if expenses.empty:
        return []
    grouped = (expenses.groupby("category")["spent"]
               .agg(totalSpent="sum", transactionCount="count", avgTransaction="mean")
               .sort_values("totalSpent", ascending=False)
               .head(limit))
    return [{
        "category": category,
        "totalSpent": _money(row.totalSpent),
        "transactionCount": int(row.transactionCount),
        "avgTransaction": _money(row.avgTransaction),
    } for category, row in grouped.iterrows()]


def monthly_trend(df: pd.DataFrame, year: int, month: int, months: int = 6) -> List[Dict[str, Any]]:
    end = pd.Timestamp(year=year, month=month, day=1) + pd.offsets.MonthEnd(0)
    start = pd.Timestamp(year=year, month=month, day=1) - pd.DateOffset(months=months - 1)
    window = df[(df["date"] >= start) & (df["date"] <= end)]
    if window.empty:
        return []
    window = window.assign(
        year=window["date"].dt.year,
        month=window["date"].dt.month,
        income=window["amount"].clip(lower=0),
        expenses=(-window["amount"]).clip(lower=0),
    )
    grouped = (window.groupby(["year", "month"])
               .agg(income=("income", "sum"), expenses=("expenses", "sum"), netAmount=("amount", "sum"))
               .sort_index())
    return [{
        "year": int(y),
        "month": int(m),
        "income": _money(row.income),
        "expenses": _money(row.expenses),
        "netAmount": _money(row.netAmount),
    } for (y, m), row in grouped.iterrows()]


def dashboard(records: List[ExtractedTransaction], month: Optional[int] = None,
              year: Optional[int] = None, session_tag: Optional[str] = None,
              today: Optional[date] = None) -> Dict[str, Any]:
    """
    Monthly summary for the requested month. When that month has no data,
    falls back to the month of the most recent transaction.
    """
    today = today or date.today()
    target_month = month or today.month
    target_year = year or today.year
    df = to_frame(records)

    if not df.empty and not _month_mask(df, target_year, target_month).any():
        latest = df["date"].max()
        target_month, target_year = int(latest.month), int(latest.year)

    month_df = df[_month_mask(df, target_year, target_month)] if not df.empty else df
    summary = _summarize(month_df)
    summary["avgTransactionAmount"] = _money(df["amount"].abs().mean()) if not df.empty else 0.0

    by_id = {r.id: r for r in records}
    recent_ids = (df.sort_values(["date", "created_at"], ascending=False).head(20)["id"].tolist()
                  if not df.empty else [])

    return {
        "summary": summary,
        "categoryBreakdown": category_breakdown(month_df),
        "recentTransactions": [by_id[i].to_dict() for i in recent_ids if i in by_id],
        "monthlyTrend": monthly_trend(df, target_year, target_month) if not df.empty else [],
        "metadata": {
            "month": target_month,
            "year": target_year,
            "totalTransactions": len(records),
            "sessionTag": session_tag,
            "lastUpdated": datetime.now().isoformat(),
        },
    }


def timeframe_start(timeframe: str, today: date) -> Optional[date]:
    if timeframe == "week":
        return today - timedelta(days=7)
    if timeframe == "month":
        return today.replace(day=1)
    if timeframe == "year":
        return today.replace(month=1, day=1)
    if timeframe == "all":
        return None
    raise ValueError(f"Unknown timeframe: {timeframe}. Use one of {', '.join(TIMEFRAMES)}.")


def spending_analytics(records: List[ExtractedTransaction], timeframe: str = "month",
                       today: Optional[date] = None) -> Dict[str, Any]:
    today = today or date.today()
    start = timeframe_start(timeframe, today)
    df = to_frame(records)
    if start is not None and not df.empty:
        df = df[df["date"] >= pd.Timestamp(start)]

    expenses = df[df["amount"] < 0].assign(spent=lambda d: d["amount"].abs())

    top_categories = []
    top_merchants = []
    if not expenses.empty:
        cats = (expenses.groupby("category")["spent"]
                .agg(totalSpent="sum", avgAmount="mean", transactionCount="count")
                .sort_values("totalSpent", ascending=False))
        top_categories = [{
            "category": category,
            "totalSpent": _money(row.totalSpent),
            "avgAmount": _money(row.avgAmount),
            "transactionCount": int(row.transactionCount),
        } for category, row in cats.iterrows()]

        with_merchant = expenses.dropna(subset=["merchant"])
        if not with_merchant.empty:
            merchants = (with_merchant.groupby("merchant")["spent"]
                         .agg(totalSpent="sum", transactionCount="count")
                         .sort_values("totalSpent", ascending=False)
                         .head(10))
            top_merchants = [{
                "merchant": merchant,
                "totalSpent": _money(row.totalSpent),
                "transactionCount": int(row.transactionCount),
            } for merchant, row in merchants.iterrows()]

    return {
        "timeframe": timeframe,
        "topCategories": top_categories,
        "topMerchants": top_merchants,
    }
