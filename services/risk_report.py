"""Excel export of a project's audit risks."""

from datetime import datetime
from io import BytesIO
from typing import Dict, Iterable, List

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill

from database import AuditRiskDB, ProjectDB

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

DETAIL_HEADERS = ["序号", "规则名称", "规则编码", "风险等级", "风险描述", "处理建议"]
COLUMN_WIDTHS = [6, 30, 15, 10, 50, 40]

LEVEL_TEXT = {
    "critical": "高风险",
    "high": "高风险",
    "medium": "中风险",
    "low": "低风险",
    "info": "提示",
}

LEVEL_FILLS = {
    "critical": "FEE2E2",
    "high": "FEE2E2",
    "medium": "FEF3C7",
    "low": "DBEAFE",
}

HEADER_FILL = PatternFill(start_color="4B5563", end_color="4B5563", fill_type="solid")
HEADER_FONT = Font(bold=True, color="FFFFFF")
TITLE_FONT = Font(bold=True, size=16)
SECTION_FONT = Font(bold=True, size=12)


def summarize_risks(risks: Iterable[AuditRiskDB]) -> Dict[str, int]:
    """High includes critical, matching how the report groups levels."""
    risks = list(risks)
    return {
        "high": sum(1 for r in risks if r.risk_level in ("critical", "high")),
        "medium": sum(1 for r in risks if r.risk_level == "medium"),
        "low": sum(1 for r in risks if r.risk_level == "low"),
        "total": len(risks),
    }


def report_filename(project: ProjectDB, today: datetime = None) -> str:
    today = today or datetime.now()
    return f"{project.name}_风险报告_{today.strftime('%Y%m%d')}.xlsx"


def build_risk_workbook(project: ProjectDB, risks: List[AuditRiskDB]) -> Workbook:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "风险报告"
    last_column = len(DETAIL_HEADERS)

    sheet.append([f"{project.name} - 风险报告"])
    sheet.append([f"导出时间：{datetime.now().strftime('%Y-%m-%d %H:%M')}"])
    sheet.append([])
    sheet["A1"].font = TITLE_FONT
    sheet.merge_cells(start_row=1, start_column=1, end_row=1, end_column=last_column)
    sheet.merge_cells(start_row=2, start_column=1, end_row=2, end_column=last_column)

    summary = summarize_risks(risks)
    sheet.append(["风险统计"])
    sheet.append(["高风险", "中风险", "低风险", "总计"])
    sheet.append([summary["high"], summary["medium"], summary["low"], summary["total"]])
    sheet.append([])
    sheet["A4"].font = SECTION_FONT

    sheet.append(["风险详情"])
    sheet["A8"].font = SECTION_FONT
    sheet.append(DETAIL_HEADERS)
    header_row = sheet.max_row
    for cell in sheet[header_row]:
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        cell.alignment = Alignment(horizontal="center", vertical="center")

    for index, risk in enumerate(risks, start=1):
        sheet.append([
            index,
            risk.rule_name,
            risk.rule_code,
            LEVEL_TEXT.get(risk.risk_level, risk.risk_level),
            risk.description,
            risk.suggestion or "暂无建议",
        ])
        fill_color = LEVEL_FILLS.get(risk.risk_level)
        for cell in sheet[sheet.max_row]:
            cell.alignment = Alignment(vertical="center", wrap_text=True)
            if fill_color:
                cell.fill = PatternFill(start_color=fill_color, end_color=fill_color, fill_type="solid")

    for column_index, width in enumerate(COLUMN_WIDTHS, start=1):
        sheet.column_dimensions[chr(ord("A") + column_index - 1)].width = width
    sheet.freeze_panes = sheet.cell(row=header_row + 1, column=1)

    return workbook


def export_risk_report(project: ProjectDB, risks: List[AuditRiskDB]) -> BytesIO:
    """Render the workbook into an in-memory buffer positioned at the start."""
    workbook = build_risk_workbook(project, risks)
    buffer = BytesIO()
    workbook.save(buffer)
    buffer.seek(0)
    return buffer
