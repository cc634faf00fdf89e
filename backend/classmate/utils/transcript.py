"""Transcript document builders (PDF via reportlab, XLSX via openpyxl).

Both builders take the transcript dictionary produced by
`services.GradeService.transcript` and return the encoded document bytes.
"""

from __future__ import annotations

import io
from xml.sax.saxutils import escape

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import cm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .grading import GRADE_SCALE

PDF_MEDIA_TYPE = "application/pdf"
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

_HEADER_FILL = "3B82F6"
_TITLE_MAX = 40


def _fmt(value, default: str = "N/A") -> str:
    if value is None or value == "":
        return default
    if isinstance(value, float):
        return f"{value:.2f}"
    return str(value)


def _short_date(value) -> str:
    return value[:10] if isinstance(value, str) and value else "N/A"


def _truncate(text: str) -> str:
    return text if len(text) <= _TITLE_MAX else text[:_TITLE_MAX] + "..."


def student_rows(transcript: dict) -> list[list[str]]:
    student = transcript["student"]
    return [
        ["Full Name:", student["full_name"]],
        ["Matric Number:", student["matric_number"]],
        ["Department:", student["department"]],
        ["Course of Study:", _fmt(student.get("course_of_study"))],
        ["College:", student["college"]],
        ["Email Address:", _fmt(student.get("email"))],
        ["Date Enrolled:", _short_date(student.get("date_enrolled"))],
    ]


def summary_rows(transcript: dict) -> list[list[str]]:
    return [
        ["Cumulative GPA:", f"{transcript['cumulative_gpa']:.2f}"],
        ["Total Credits Earned:", str(transcript["total_credits"])],
        ["Total Courses Enrolled:", str(transcript["total_courses"])],
        ["Courses Completed:", str(transcript["completed_courses"])],
        ["Courses In Progress:", str(transcript["in_progress_courses"])],
        ["Graded Assignments:", str(transcript["graded_assignments"])],
    ]


def build_pdf(transcript: dict) -> bytes:
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        rightMargin=1.5 * cm,
        leftMargin=1.5 * cm,
        topMargin=1.5 * cm,
        bottomMargin=1.5 * cm,
        title=f"Academic Transcript - {transcript['student']['matric_number']}",
        subject="Official Academic Transcript",
        author=transcript["institution"],
    )
    styles = getSampleStyleSheet()
    title_style = ParagraphStyle(
        "TranscriptTitle",
        parent=styles["Heading1"],
        fontSize=15,
        textColor=colors.HexColor("#282828"),
        alignment=TA_CENTER,
        spaceAfter=4,
    )
    subtitle_style = ParagraphStyle(
        "TranscriptSubtitle",
        parent=styles["Heading2"],
        fontSize=12,
        textColor=colors.HexColor("#505050"),
        alignment=TA_CENTER,
        spaceAfter=14,
    )
    section_style = ParagraphStyle(
        "TranscriptSection",
        parent=styles["Heading3"],
        fontSize=11,
        textColor=colors.HexColor("#282828"),
        spaceBefore=10,
        spaceAfter=6,
    )
    small_style = ParagraphStyle(
        "TranscriptSmall",
        parent=styles["Normal"],
        fontSize=8,
        textColor=colors.HexColor("#718096"),
    )

    content = [
        Paragraph(escape(transcript["institution"].upper()), title_style),
        Paragraph("OFFICIAL ACADEMIC TRANSCRIPT", subtitle_style),
        Paragraph("STUDENT INFORMATION", section_style),
        _key_value_table(student_rows(transcript)),
        Paragraph("ACADEMIC SUMMARY", section_style),
        _key_value_table(summary_rows(transcript)),
        Paragraph("COURSE PERFORMANCE", section_style),
    ]

    if not transcript["semesters"]:
        content.append(Paragraph("No course enrollments on record.", styles["Normal"]))
    for semester in transcript["semesters"]:
        heading = f"Level {semester['level']} - Semester {semester['semester']} (GPA {semester['gpa']:.2f})"
        content.append(Paragraph(escape(heading), styles["Heading4"]))
        rows = [["Code", "Course Title", "Credits", "Score", "Grade", "Points"]]
        for course in semester["courses"]:
            rows.append([
                course["code"],
                _truncate(course["title"]),
                str(course["credits"]),
                _fmt(course["score"], "-"),
                _fmt(course["grade"], "-"),
                f"{course['grade_point']:.1f}",
            ])
        content.append(_grid_table(rows, [2.2 * cm, 7.5 * cm, 1.8 * cm, 1.8 * cm, 1.6 * cm, 1.6 * cm]))
        content.append(Spacer(1, 6))

    content.append(Paragraph("GRADE SCALE", section_style))
    scale_rows = [["Grade", "Score Range", "Points", "Interpretation"]]
    scale_rows += [[g["grade"], g["range"], f"{g['points']:.1f}", g["interpretation"]] for g in GRADE_SCALE]
    content.append(_grid_table(scale_rows, [2 * cm, 3.5 * cm, 2 * cm, 4 * cm]))
    content.append(Spacer(1, 14))
    content.append(Paragraph(
        escape(f"Generated on {transcript['generated_at'][:19].replace('T', ' ')} UTC. "
               "GPA counts completed, graded courses only."),
        small_style,
    ))

    doc.build(content)
    return buffer.getvalue()


def _key_value_table(rows: list[list[str]]) -> Table:
    table = Table(rows, colWidths=[4.5 * cm, 11 * cm], hAlign="LEFT")
    table.setStyle(TableStyle([
        ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("TEXTCOLOR", (0, 0), (-1, -1), colors.HexColor("#3c3c3c")),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 2),
        ("TOPPADDING", (0, 0), (-1, -1), 2),
    ]))
    return table


def _grid_table(rows: list[list[str]], widths: list[float]) -> Table:
    table = Table(rows, colWidths=widths, hAlign="LEFT", repeatRows=1)
    style = [
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor(f"#{_HEADER_FILL}")),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 8),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.HexColor("#cbd5e0")),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
    ]
    for index in range(1, len(rows)):
        if index % 2 == 0:
            style.append(("BACKGROUND", (0, index), (-1, index), colors.HexColor("#f0f0f0")))
    table.setStyle(TableStyle(style))
    return table


def build_workbook(transcript: dict) -> bytes:
    wb = Workbook()
    bold = Font(bold=True)
    header_font = Font(bold=True, color="FFFFFF")
    header_fill = PatternFill(start_color=_HEADER_FILL, end_color=_HEADER_FILL, fill_type="solid")

    def write_header(ws, row: int, values: list[str]):
        for col, value in enumerate(values, start=1):
            cell = ws.cell(row=row, column=col, value=value)
            cell.font = header_font
            cell.fill = header_fill
            cell.alignment = Alignment(horizontal="center")

    summary = wb.active
    summary.title = "Transcript Summary"
    summary.append(["OFFICIAL ACADEMIC TRANSCRIPT"])
    summary.append([transcript["institution"]])
    summary.append([])
    summary.append(["STUDENT INFORMATION"])
    for row in student_rows(transcript):
        summary.append(row)
    summary.append([])
    summary.append(["ACADEMIC SUMMARY"])
    for row in summary_rows(transcript):
        summary.append(row)
    summary.append([])
    summary.append(["Generated At:", transcript["generated_at"]])
    for row in (1, 4, 13):
        summary.cell(row=row, column=1).font = bold
    summary.column_dimensions["A"].width = 26
    summary.column_dimensions["B"].width = 48

    grades = wb.create_sheet("Course Grades")
    grades.append(["COURSE PERFORMANCE"])
    grades.cell(row=1, column=1).font = bold
    grades.append([])
    write_header(grades, 3, ["Level", "Semester", "Course Code", "Course Title", "Credits",
                             "Score", "Grade", "Grade Points", "Status", "Progress (%)"])
    for semester in transcript["semesters"]:
        for course in semester["courses"]:
            grades.append([
                semester["level"],
                semester["semester"],
                course["code"],
                course["title"],
                course["credits"],
                course["score"],
                course["grade"] or "",
                course["grade_point"],
                "Completed" if course["is_completed"] else "In Progress",
                course["progress"],
            ])
    grades.append([])
    for semester in transcript["semesters"]:
        grades.append([f"Level {semester['level']} Semester {semester['semester']} GPA", semester["gpa"]])
    grades.append(["Cumulative GPA", transcript["cumulative_gpa"]])
    grades.column_dimensions["D"].width = 40

    details = wb.create_sheet("Assignment Details")
    details.append(["DETAILED ASSIGNMENT GRADES"])
    details.cell(row=1, column=1).font = bold
    details.append([])
    write_header(details, 3, ["Course Code", "Assignment", "Max Score", "Score", "Percentage",
                              "Grade", "Submitted", "Graded", "Feedback"])
    for item in transcript["assignments"]:
        details.append([
            item["course_code"],
            item["title"],
            item["max_score"],
            item["score"],
            item["percentage"],
            item["grade"] or "",
            _short_date(item["submitted_at"]),
            "Yes" if item["is_graded"] else "No",
            item["feedback"] or "",
        ])
    details.column_dimensions["B"].width = 36
    details.column_dimensions["I"].width = 48

    legend = wb.create_sheet("Grade Scale")
    legend.append(["GRADE SCALE AND INTERPRETATION"])
    legend.cell(row=1, column=1).font = bold
    legend.append([])
    write_header(legend, 3, ["Grade", "Score Range", "Grade Points", "Interpretation"])
    for g in GRADE_SCALE:
        legend.append([g["grade"], g["range"], g["points"], g["interpretation"]])
    legend.append([])
    legend.append(["Note: GPA is calculated from completed, graded courses weighted by credit units."])

    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()
