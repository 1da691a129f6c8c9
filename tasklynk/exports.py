import csv
import io
from collections import OrderedDict

from openpyxl import Workbook

from tasklynk.models import Invoice, Job, User

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

JOB_COLUMNS = [
    "Order ID", "Title", "Work Type", "Pages", "Slides", "Amount", "Freelancer Earnings",
    "Status", "Client", "Freelancer", "Payment Confirmed", "Deadline", "Created At", "Completed At",
]
INVOICE_COLUMNS = [
    "Invoice #", "Job", "Work Type", "Client", "Freelancer", "Amount",
    "Freelancer Amount", "Admin Commission", "Paid", "Created At",
]
SUMMARY_COLUMNS = ["Group", "Invoices", "Total Amount", "Freelancer Amount", "Admin Commission", "Paid Count"]


def _fmt(value):
    return value.strftime("%Y-%m-%d %H:%M") if value else ""


def _user_names(ids):
    ids = {i for i in ids if i}
    if not ids:
        return {}
    return {u.id: u.name for u in User.query.filter(User.id.in_(ids)).all()}


def jobs_csv(status=None):
    query = Job.query.order_by(Job.created_at.desc())
    if status:
        query = query.filter(Job.status == status)
    jobs = query.all()
    names = _user_names([j.client_id for j in jobs] + [j.assigned_freelancer_id for j in jobs])
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(JOB_COLUMNS)
    for job in jobs:
        writer.writerow([
            job.label, job.title, job.work_type, job.pages, job.slides, job.amount,
            job.freelancer_earnings if job.freelancer_earnings is not None else "",
            job.status, names.get(job.client_id, ""), names.get(job.assigned_freelancer_id, ""),
            "yes" if job.payment_confirmed else "no",
            _fmt(job.actual_deadline), _fmt(job.created_at), _fmt(job.completed_at),
        ])
    return output.getvalue()


def invoice_rows(paid=None):
    query = Invoice.query.order_by(Invoice.created_at.desc())
    if paid is not None:
        query = query.filter(Invoice.is_paid.is_(paid))
    invoices = query.all()
    names = _user_names([i.client_id for i in invoices] + [i.freelancer_id for i in invoices])
    rows = []
    for inv in invoices:
        job = inv.job
        rows.append({
            "invoice": f"INV-{inv.id:06d}",
            "job": f"{job.label} {job.title}" if job else str(inv.job_id),
            "work_type": job.work_type if job else "",
            "client_id": inv.client_id,
            "client": names.get(inv.client_id) or f"Client #{inv.client_id}",
            "freelancer_id": inv.freelancer_id,
            "freelancer": names.get(inv.freelancer_id) or f"Freelancer #{inv.freelancer_id or 'N/A'}",
            "amount": round(inv.amount or 0, 2),
            "freelancer_amount": round(inv.freelancer_amount or 0, 2),
            "admin_commission": round(inv.admin_commission or 0, 2),
            "paid": bool(inv.is_paid),
            "created_at": _fmt(inv.created_at),
        })
    return rows


def group_invoice_rows(rows, group_by):
    """Group rows by client or freelancer id; returns (display name, rows) pairs."""
    id_key, name_key = ("freelancer_id", "freelancer") if group_by == "freelancer" else ("client_id", "client")
    groups = OrderedDict()
    for row in rows:
        groups.setdefault(row[id_key], (row[name_key], []))[1].append(row)
    return list(groups.values())


def _row_values(row):
    return [
        row["invoice"], row["job"], row["work_type"], row["client"], row["freelancer"], row["amount"],
        row["freelancer_amount"], row["admin_commission"], "yes" if row["paid"] else "no", row["created_at"],
    ]


def _totals(rows):
    return (
        round(sum(r["amount"] for r in rows), 2),
        round(sum(r["freelancer_amount"] for r in rows), 2),
        round(sum(r["admin_commission"] for r in rows), 2),
        sum(1 for r in rows if r["paid"]),
    )


def invoices_csv(rows, group_by):
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(["Group"] + INVOICE_COLUMNS)
    for name, group in group_invoice_rows(rows, group_by):
        for row in group:
            writer.writerow([name] + _row_values(row))
        amount, freelancer_amount, commission, paid_count = _totals(group)
        writer.writerow([name, "TOTAL", "", "", "", "", amount, freelancer_amount, commission, paid_count, ""])
    return output.getvalue()


def _sheet_title(name, used):
    # Excel caps sheet titles at 31 chars and forbids a few characters.
    base = "".join("_" if ch in '[]:*?/\\' else ch for ch in name)[:31] or "Group"
    title, n = base, 2
    while title in used:
        suffix = f" ({n})"
        title = base[:31 - len(suffix)] + suffix
        n += 1
    used.add(title)
    return title


def invoices_xlsx(rows, group_by):
    wb = Workbook()
    summary = wb.active
    summary.title = "SUMMARY"
    summary.append(SUMMARY_COLUMNS)
    used = {"SUMMARY"}
    for name, group in group_invoice_rows(rows, group_by):
        amount, freelancer_amount, commission, paid_count = _totals(group)
        summary.append([name, len(group), amount, freelancer_amount, commission, paid_count])
        ws = wb.create_sheet(_sheet_title(name, used))
        ws.append(INVOICE_COLUMNS)
        for row in group:
            ws.append(_row_values(row))
        ws.append(["TOTAL", "", "", "", "", amount, freelancer_amount, commission, paid_count, ""])
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()
