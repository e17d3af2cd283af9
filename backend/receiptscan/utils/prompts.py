"""Default prompt templates for the inference stages.

This module contains helper functions that return the prompts used by
the detection, extraction and classification stages. Keeping prompts
in a central location makes it easier to iterate on their content and
ensure consistency across the pipeline. Every prompt asks for a JSON
object only; the inference service parses the reply with
``response_format={"type": "json_object"}``.
"""

from __future__ import annotations

from textwrap import dedent
from typing import Optional

from receiptscan.models.enums import DebitAccount


def get_detection_prompt() -> str:
    """Return the prompt used to decide whether a frame shows a receipt."""
    return dedent(
        """
        あなたは領収書検出AIです。
        以下の画像を見て、「領収書またはレシートが写っているか」を判定してください。

        判定基準：
        - 明確に領収書・レシート・インボイスが映っている → receipt
        - 領収書らしきものが写っているが不鮮明/一部のみ → partial
        - 領収書は写っていない（手、背景、その他） → none

        必ずJSON形式のみで回答してください：
        {"result": "receipt", "confidence": 0.9}
        """
    ).strip()


def get_extraction_prompt() -> str:
    """Return the prompt used to read structured fields off a receipt.

    The model is asked for every total it can see in
    ``total_amount_candidates`` as well as its own pick in
    ``total_amount``; the largest value is chosen client side.
    """
    return dedent(
        """
        あなたはOCR専門AIです。
        以下の領収書画像から情報を抽出してください。

        抽出項目（見つからない場合はnullにする）：
        - date: 取引日（ISO形式 YYYY-MM-DD。和暦の場合は原文のままでも可）
        - store_name: 店名・会社名
        - total_amount: 合計金額（整数、円）
        - total_amount_candidates: 合計金額の候補すべて（整数の配列）
        - tax_info: 税関連情報（例: "内税10%" "税抜1,000円"）
        - invoice_number: インボイス登録番号（T + 13桁の形式）
        - ocr_raw_text: 画像全体のOCRテキスト（改行区切り）
        - confidence: 全体的な読み取り信頼度（0.0〜1.0）

        注意事項：
        - 金額は数字のみ（カンマ・円記号を除く）
        - 日付が和暦の場合は西暦に変換（令和7年 → 2025年）
        - 複数の合計金額候補がある場合は最大の金額を選ぶ

        必ずJSON形式のみで回答してください。説明文は不要。
        """
    ).strip()


_CLASSIFICATION_TEMPLATE = dedent(
    """
    あなたは日本の税務・会計の専門家AIです。
    以下の領収書情報から、最も適切な借方勘定科目を推定してください。

    領収書情報:
    - 店名: {store_name}
    - 金額: {total_amount}円
    - 税情報: {tax_hint}
    - OCRテキスト（抜粋）: {text_prefix}

    次の勘定科目から選んでください：
    {accounts}

    必ずJSON形式のみで回答してください：
    {{"debit_account": "消耗品費", "debit_account_candidate2": null, "confidence": 0.85, "reason": "理由"}}
    """
).strip()


def get_classification_prompt(
    store_name: Optional[str],
    total_amount: Optional[int],
    tax_hint: Optional[str],
    text_prefix: Optional[str],
) -> str:
    """Return the prompt used to pick a debit account for a receipt.

    ``text_prefix`` must already be truncated by the caller.
    """
    return _CLASSIFICATION_TEMPLATE.format(
        store_name=store_name or "不明",
        total_amount=total_amount if total_amount is not None else "不明",
        tax_hint=tax_hint or "不明",
        text_prefix=text_prefix or "不明",
        accounts=", ".join(account.value for account in DebitAccount),
    )
