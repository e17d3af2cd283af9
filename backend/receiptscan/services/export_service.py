"""Spreadsheet exports of a job's receipts.

Two formats are produced from the same journal rows:

* **csv**: UTF-8 with a byte order mark and CRLF line endings so that
  spreadsheet software on Windows opens it with the right encoding.
* **xlsx**: three sheets built with openpyxl: ``仕訳データ`` (journal
  rows), ``要確認リスト`` (receipts needing review, with their reasons
  spelled out) and ``サマリ`` (totals and a per-account breakdown).
  Cells are written without styling.

The file is uploaded to the export bucket under
``{owner}/{job}/{timestamp}.{ext}``, an ``Export`` row is recorded and a
signed download URL valid for ``SIGNED_URL_TTL_SECONDS`` is returned.
"""

from __future__ import annotations

import csv
import datetime as dt
import io
import logging
from collections import OrderedDict
from typing import Iterable, List, Optional, Sequence, Union

from openpyxl import Workbook
from sqlalchemy import select
from sqlalchemy.orm import Session

from receiptscan.core.config import settings
from receiptscan.core.exceptions import InvalidPayloadError
from receiptscan.models.enums import ExportFormat
from receiptscan.models.schemas import ExportResult
from receiptscan.models.tables import Export, Receipt
from receiptscan.services.job_service import get_job
from receiptscan.services.storage_service import StorageService, split_storage_key

logger = logging.getLogger(__name__)

PAYMENT_LABELS = {
    "cash": "現金",
    "card": "クレジットカード",
    "transit": "電子マネー",
    "transfer": "銀行振込",
    "unknown": "不明",
}

INVOICE_LABELS = {
    "yes": "適格（インボイスあり）",
    "no": "非適格",
    "unknown": "不明",
}

TAX_LABELS = {
    "課税10%": "課税（10%）",
    "課税8%（軽減）": "課税（8%軽減）",
    "非課税": "非課税",
    "不課税": "不課税",
    "免税": "免税",
}

REVIEW_REASON_LABELS = {
    "date_missing": "日付不明",
    "store_missing": "店名不明",
    "amount_missing": "金額不明",
    "invoice_unknown": "インボイス不明",
    "low_confidence": "読み取り精度が低い",
    "debit_account_low_confidence": "科目推定の精度が低い",
    "invalid_invoice_number": "登録番号の形式が不正",
}

JOURNAL_HEADERS = [
    "取引日", "借方科目", "借方金額", "税区分", "取引先", "摘要",
    "貸方科目", "貸方金額", "支払方法", "インボイス判定", "登録番号",
    "証憑ID", "要確認フラグ", "科目候補2", "信頼度", "メモ",
]
REVIEW_HEADERS = ["証憑ID", "店名", "取引日", "金額", "要確認理由"]

CONTENT_TYPES = {
    ExportFormat.CSV: "text/csv",
    ExportFormat.XLSX: "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}


def _value(v):
    return getattr(v, "value", v)


def journal_row(receipt: Receipt, for_csv: bool = False) -> list:
    """One journal line; dates and numbers stay typed unless ``for_csv``."""
    date = receipt.final_date
    confidence = receipt.ocr_confidence or 0.0
    return [
        date.isoformat() if for_csv else date,
        receipt.debit_account,
        receipt.final_total_amount,
        TAX_LABELS.get(receipt.tax_category, receipt.tax_category),
        receipt.partner_name or "",
        receipt.description or "",
        receipt.credit_account,
        receipt.final_total_amount,
        PAYMENT_LABELS.get(_value(receipt.payment_method), _value(receipt.payment_method)),
        INVOICE_LABELS.get(_value(receipt.invoice_flag), _value(receipt.invoice_flag)),
        receipt.invoice_number or "",
        receipt.evidence_id,
        "要確認" if receipt.needs_review else "",
        receipt.debit_account_candidate2 or "",
        f"{confidence:.2f}" if for_csv else round(confidence, 2),
        receipt.memo or "",
    ]


def review_reason_text(reasons: Optional[Sequence[str]]) -> str:
    return "、".join(REVIEW_REASON_LABELS.get(code, code) for code in (reasons or []))


def build_csv(receipts: Iterable[Receipt]) -> bytes:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\r\n")
    writer.writerow(JOURNAL_HEADERS)
    for receipt in receipts:
        writer.writerow(journal_row(receipt, for_csv=True))
    return buf.getvalue().encode("utf-8-sig")


def build_xlsx(receipts: List[Receipt], generated_at: Optional[dt.datetime] = None) -> bytes:
    wb = Workbook()

    ws = wb.active
    ws.title = "仕訳データ"
    ws.append(JOURNAL_HEADERS)
    for receipt in receipts:
        ws.append(journal_row(receipt))

    ws_review = wb.create_sheet("要確認リスト")
    ws_review.append(REVIEW_HEADERS)
    flagged = [r for r in receipts if r.needs_review]
    for receipt in flagged:
        ws_review.append([
            receipt.evidence_id,
            receipt.final_store_name,
            receipt.final_date,
            receipt.final_total_amount,
            review_reason_text(receipt.review_reasons),
        ])

    ws_summary = wb.create_sheet("サマリ")
    generated_at = generated_at or dt.datetime.now()
    ws_summary.append(["出力日時", generated_at.strftime("%Y/%m/%d %H:%M:%S")])
    ws_summary.append(["総件数", len(receipts)])
    ws_summary.append(["要確認件数", len(flagged)])
    ws_summary.append(["合計金額", sum(r.final_total_amount or 0 for r in receipts)])
    ws_summary.append([])
    ws_summary.append(["科目", "件数", "合計金額"])
    by_account: "OrderedDict[str, list]" = OrderedDict()
    for receipt in receipts:
        entry = by_account.setdefault(receipt.debit_account, [0, 0])
        entry[0] += 1
        entry[1] += receipt.final_total_amount or 0
    for account, (count, amount) in by_account.items():
        ws_summary.append([account, count, amount])

    out = io.BytesIO()
    wb.save(out)
    return out.getvalue()


def create_export(
    session: Session,
    owner_id: str,
    job_id: str,
    fmt: Union[ExportFormat, str] = ExportFormat.XLSX,
    credit_account_default: Optional[str] = None,
    storage: Optional[StorageService] = None,
) -> ExportResult:
    """Build, upload and record an export of the job's receipts."""
    try:
        fmt = ExportFormat(fmt)
    except ValueError as exc:
        raise InvalidPayloadError(f"Unknown export format: {fmt}", errors=[{"loc": ["format"], "msg": str(fmt)}]) from exc

    get_job(session, owner_id, job_id)
    receipts = list(
        session.execute(
            select(Receipt)
            .where(Receipt.job_id == job_id, Receipt.owner_id == owner_id)
            .order_by(Receipt.receipt_index.asc())
        ).scalars()
    )
    data = build_csv(receipts) if fmt == ExportFormat.CSV else build_xlsx(receipts)

    storage = storage or StorageService()
    timestamp = dt.datetime.utcnow().strftime("%Y-%m-%dT%H-%M-%S-%fZ")
    key = f"{owner_id}/{job_id}/{timestamp}.{fmt.value}"
    storage_key = storage.upload(settings.EXPORT_BUCKET, key, data, content_type=CONTENT_TYPES[fmt])

    export = Export(
        job_id=job_id,
        owner_id=owner_id,
        format=fmt,
        file_storage_key=storage_key,
        row_count=len(receipts),
        credit_account_default=credit_account_default or settings.DEFAULT_CREDIT_ACCOUNT,
    )
    session.add(export)
    session.commit()

    ttl = settings.SIGNED_URL_TTL_SECONDS
    bucket, object_key = split_storage_key(storage_key)
    url = storage.signed_url(bucket, object_key, ttl)
    logger.info("export %s created job=%s format=%s rows=%d", export.id, job_id, fmt.value, len(receipts))
    return ExportResult(
        export_id=export.id,
        format=fmt,
        file_storage_key=storage_key,
        row_count=len(receipts),
        download_url=url,
        expires_at=dt.datetime.now(dt.timezone.utc) + dt.timedelta(seconds=ttl),
    )


def list_exports(session: Session, owner_id: str, job_id: str) -> List[Export]:
    """Export history of a job, newest first."""
    get_job(session, owner_id, job_id)
    stmt = (
        select(Export)
        .where(Export.job_id == job_id, Export.owner_id == owner_id)
        .order_by(Export.created_at.desc())
    )
    return list(session.execute(stmt).scalars())
