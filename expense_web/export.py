"""Excel 报表导出。"""

from io import BytesIO
from typing import Sequence

import pandas as pd

from expense_web.aggregation import by_month

EXPENSE_COLUMNS = ["Date", "Description", "Category", "Amount", "Notes", "Owner ID"]
MONTHLY_COLUMNS = ["Month", "Count", "Total"]


def export_workbook(expenses: Sequence) -> bytes:
    """生成包含支出明细和月度汇总两个工作表的 Excel 文件。"""
    expense_rows = [
        {
            "Date": e.date,
            "Description": e.description,
            "Category": e.category,
            "Amount": float(e.amount),
            "Notes": e.notes or "",
            "Owner ID": e.user_id,
        }
        for e in expenses
    ]
    monthly_rows = [
        {
            "Month": bucket.month.strftime("%Y-%m"),
            "Count": bucket.count,
            "Total": float(bucket.sum_amount),
        }
        for bucket in by_month(expenses)
    ]

    buffer = BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        pd.DataFrame(expense_rows, columns=EXPENSE_COLUMNS).to_excel(
            writer, index=False, sheet_name="Expenses"
        )
        pd.DataFrame(monthly_rows, columns=MONTHLY_COLUMNS).to_excel(
            writer, index=False, sheet_name="Monthly"
        )
    return buffer.getvalue()
