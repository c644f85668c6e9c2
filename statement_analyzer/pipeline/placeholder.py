from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Sequence

from statement_analyzer.pipeline.pack_documents import DocumentContent

PLACEHOLDER_MODEL = "placeholder-demo"

_INCOME_SPLIT = (("Salary", 80), ("Other Income", 20))
_EXPENSE_SPLIT = (
    ("Housing", 30),
    ("Food", 20),
    ("Transportation", 15),
    ("Utilities", 10),
    ("Entertainment", 10),
    ("Other", 15),
)


def build_placeholder_analysis(documents: Sequence[DocumentContent]) -> dict[str, Any]:
    """Synthesize a deterministic result from input size when no AI key is set.

    Only ``metadata.analysisTimestamp`` depends on the clock.
    """
    total_chars = sum(document.size for document in documents)
    estimated_income = (total_chars // 100) * 50
    estimated_expenses = int(estimated_income * 0.8)

    return {
        "totalIncome": estimated_income,
        "totalExpenses": estimated_expenses,
        "netCashFlow": estimated_income - estimated_expenses,
        "categories": {
            "income": _split(estimated_income, _INCOME_SPLIT),
            "expenses": _split(estimated_expenses, _EXPENSE_SPLIT),
        },
        "monthlyTrends": [
            {"month": "Jan", "income": estimated_income * 0.9, "expenses": estimated_expenses * 0.8},
            {"month": "Feb", "income": estimated_income * 1.1, "expenses": estimated_expenses * 0.9},
            {"month": "Mar", "income": estimated_income * 1.0, "expenses": estimated_expenses * 1.0},
        ],
        "insights": [
            {
                "type": "Demo Mode",
                "description": "AI analysis requires an API key configuration",
                "severity": "low",
            },
            {
                "type": "File Processing",
                "description": "Files uploaded successfully and are ready for AI analysis",
                "severity": "low",
            },
            {
                "type": "Setup",
                "description": (
                    "Set GEMINI_API_KEY (or OPENAI_API_KEY with "
                    "STATEMENT_ANALYZER_LLM_PROVIDER=openai) to enable real AI insights"
                ),
                "severity": "medium",
            },
        ],
        "recommendations": [
            {
                "category": "Setup",
                "suggestion": "Configure an AI API key to get personalized financial recommendations",
                "potentialSavings": 0,
            },
            {
                "category": "Analysis",
                "suggestion": "Upload more bank statements for comprehensive analysis",
                "potentialSavings": 0,
            },
            {
                "category": "Budgeting",
                "suggestion": "Consider tracking expenses in categories for better insights",
                "potentialSavings": 0,
            },
        ],
        "summary": (
            f"Demo analysis completed for {len(documents)} document(s). This is "
            "placeholder data shown because the AI API key is not configured. "
            "Configure an API key to get real AI-powered financial insights."
        ),
        "metadata": {
            "filesProcessed": len(documents),
            "totalExtractedLength": total_chars,
            "analysisTimestamp": datetime.now(tz=timezone.utc).isoformat(),
            "modelUsed": PLACEHOLDER_MODEL,
            "isPlaceholderData": True,
        },
    }


def _split(total: int, shares: Sequence[tuple[str, int]]) -> list[dict[str, Any]]:
    return [
        {"category": name, "amount": total * percentage / 100, "percentage": percentage}
        for name, percentage in shares
    ]
