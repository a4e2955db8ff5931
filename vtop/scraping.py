# scraping.py
"""
Pure extraction functions: one raw VTOP page in, one typed record out.

Nothing here touches the network or keeps state between calls. Malformed
or empty pages never raise; they yield empty lists, empty strings and
zeroed numbers, and rows missing their defining fields are dropped.
"""

import re
import math
import logging

from bs4 import BeautifulSoup
from selectolax.lexbor import LexborHTMLParser

from .models import (
    CLASS_TYPES,
    DAYS,
    DEFAULT_CLASS_TYPE,
    AttendanceData,
    AttendanceEntry,
    AttendanceInsight,
    CourseGrade,
    CourseMarks,
    CourseMaterial,
    CourseOutcome,
    CoursePageData,
    CurriculumCategory,
    CurriculumCourse,
    CurriculumData,
    DashboardCgpa,
    EducationalInfo,
    ExamCategory,
    ExamMark,
    ExamScheduleData,
    ExamSlot,
    FamilyInfo,
    GradesData,
    HostelInfo,
    MarksData,
    PersonalInfo,
    ProctorInfo,
    ProfileData,
    ReferenceBook,
    Semester,
    SemesterGrades,
    SyllabusModule,
    TimetableData,
    TimetableDay,
    TimetableSlot,
)

logger = logging.getLogger("vtop.scraping")

# -------------------------------
# Text helpers
# -------------------------------

_ESCAPED_NEWLINE = re.compile(r"\\r\\n|\\r|\\n")
_ESCAPED_TAB = re.compile(r"\\t")
_TAG = re.compile(r"<[^>]+>")
_WS = re.compile(r"\s+")


def normalize_html(html):
    """Decode the entities VTOP actually emits and unescape literal \\n / \\t sequences."""
    html = html or ""
    html = html.replace("&#39;", "'").replace("&amp;", "&").replace("&nbsp;", " ")
    html = _ESCAPED_NEWLINE.sub("\n", html)
    return _ESCAPED_TAB.sub("\t", html)


def clean_text(text):
    """Strip markup from a fragment and collapse whitespace to single spaces."""
    text = _TAG.sub(" ", text or "")
    text = text.replace("&nbsp;", " ").replace("&amp;", "&").replace("&#39;", "'")
    text = _ESCAPED_NEWLINE.sub(" ", text)
    text = _ESCAPED_TAB.sub(" ", text)
    return _WS.sub(" ", text).strip()


def _squash(text):
    return _WS.sub(" ", text or "").strip()


def _soup(html):
    return BeautifulSoup(normalize_html(html), "lxml")


def _text(el):
    return _squash(el.get_text(" ")) if el is not None else ""


def _cells(row):
    return [_text(td) for td in row.find_all("td", recursive=False)]


def _at(cells, index):
    return cells[index] if index < len(cells) else ""


def _body_rows(soup):
    """Rows of the first <tbody>, or of the whole page when there is none."""
    container = soup.find("tbody") or soup
    return container.find_all("tr")


def _table_rows(table):
    return (table.find("tbody") or table).find_all("tr")


def _leaf_tables(soup):
    return [t for t in soup.find_all("table") if t.find("table") is None]


_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")
_LEADING_FLOAT = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+))")


def _leading_int(text):
    match = _LEADING_INT.match(text or "")
    return int(match.group(1)) if match else None


def _leading_float(text):
    match = _LEADING_FLOAT.match(text or "")
    return float(match.group(1)) if match else None


def _first_int(text):
    match = re.search(r"(\d+)", text or "")
    return int(match.group(1)) if match else 0


def round2(value):
    """Half-up rounding to two places (VTOP's own figures round this way)."""
    return math.floor(value * 100 + 0.5) / 100


def _class_type(raw, allowed=CLASS_TYPES):
    raw = (raw or "").strip().upper()
    return raw if raw in allowed else DEFAULT_CLASS_TYPE


SEMESTER_NAME_RE = re.compile(r"(?:Winter|Fall|Summer)\s+Semester\s+\d{4}-\d{2}", re.I)


def _semester_name(html):
    match = SEMESTER_NAME_RE.search(html or "")
    return match.group(0) if match else ""


# -------------------------------
# Login flow fragments
# -------------------------------


def extract_csrf_token(html):
    """The _csrf hidden input, falling back to the _csrf meta tag."""
    if not html:
        return None
    tree = LexborHTMLParser(html)
    node = tree.css_first('input[name="_csrf"]')
    if node is not None and node.attributes.get("value"):
        return node.attributes["value"]
    node = tree.css_first('meta[name="_csrf"]')
    if node is not None and node.attributes.get("content"):
        return node.attributes["content"]
    return None


_CAPTCHA_SRC = re.compile(r'src="(data:image/[^"]+)"')


def extract_captcha_image(html):
    """Inline data: URI of the CAPTCHA image, or None."""
    if not html:
        return None
    for img in LexborHTMLParser(html).css("img"):
        src = img.attributes.get("src") or ""
        if src.startswith("data:image/"):
            return src
    match = _CAPTCHA_SRC.search(html)
    return match.group(1) if match else None


_REGNO_PATTERNS = (
    re.compile(r'id="authorizedIDX"[^>]*value="([^"]+)"', re.I),
    re.compile(r'id="authorizedID"[^>]*value="([^"]+)"', re.I),
    re.compile(r"(\d{2}[A-Z]{2,5}\d{4,5})\s*\(STUDENT\)", re.I),
    re.compile(r"\b(\d{2}[A-Z]{2,5}\d{4,5})\b"),
)


def extract_registration_number(html):
    for pattern in _REGNO_PATTERNS:
        match = pattern.search(html or "")
        if match:
            return match.group(1)
    return ""


# -------------------------------
# Semesters
# -------------------------------


def scrape_semesters_from_html(html):
    tree = LexborHTMLParser(html or "<html></html>")
    select = tree.css_first("select#semesterSubId")
    options = (select if select is not None else tree).css("option")
    semesters = []
    for option in options:
        sem_id = (option.attributes.get("value") or "").strip()
        name = option.text(deep=True).strip()
        lowered = name.lower()
        if not sem_id or not name or "choose" in lowered or "select" in lowered:
            continue
        semesters.append(
            Semester(id=sem_id, name=name, is_current="selected" in option.attributes)
        )
    return semesters


# -------------------------------
# Attendance
# -------------------------------

_ATTENDANCE_TYPE = re.compile(
    r"callStudentAttendanceDetailDisplay\([^)]*,\s*(?:'|&#39;)([A-Z]+)(?:'|&#39;)\s*\)"
)


def is_debarred(status_cell):
    status = (status_cell or "").lower()
    return "debarred" in status and "permitted" not in status


def scrape_attendance_from_html(html, semester_id, fetched_at=""):
    """
    VTOP attendance table columns:
    [slNo, classGroup, courseDetail, classDetail, facultyDetail,
     attended, total, percentage, debarStatus, link]
    """
    semester_name = _semester_name(html)
    soup = _soup(html)
    entries = []
    for row in _body_rows(soup):
        cells = _cells(row)
        if len(cells) < 10:
            continue

        course_parts = [p.strip() for p in cells[2].split(" - ")]
        if len(course_parts) < 2:
            continue
        course_code = course_parts[0]
        if len(course_parts) > 2:
            course_name = " - ".join(course_parts[1:-1])
        else:
            course_name = course_parts[1]

        class_parts = [p.strip() for p in cells[3].split(" - ")]
        slot = class_parts[1] if len(class_parts) >= 2 else ""

        type_match = _ATTENDANCE_TYPE.search(str(row))
        class_type = _class_type(type_match.group(1) if type_match else "")

        percentage = re.search(r"(\d+)%", cells[7])
        entries.append(
            AttendanceEntry(
                course_code=course_code,
                course_name=course_name,
                class_type=class_type,
                slot=slot,
                faculty=cells[4].split(" - ")[0].strip(),
                attended_classes=_first_int(cells[5]),
                total_classes=_first_int(cells[6]),
                attendance_percentage=int(percentage.group(1)) if percentage else 0,
                is_debarred=is_debarred(cells[8]),
            )
        )
    return AttendanceData(
        semester_id=semester_id,
        semester_name=semester_name,
        entries=entries,
        last_updated=fetched_at,
    )


def calculate_classes_needed(attended, total, target_percentage):
    """Consecutive classes to attend before the running percentage reaches the target."""
    target = target_percentage / 100
    if target >= 1:
        return math.inf
    return max(0, math.ceil((target * total - attended) / (1 - target)))


def calculate_classes_can_skip(attended, total, target_percentage):
    """Classes that can be missed while staying at or above the target."""
    target = target_percentage / 100
    if target <= 0:
        return math.inf
    return max(0, math.floor(attended / target - total))


def attendance_insights(data):
    return [
        AttendanceInsight(
            course_code=entry.course_code,
            classes_needed_for_75=calculate_classes_needed(entry.attended_classes, entry.total_classes, 75),
            classes_needed_for_85=calculate_classes_needed(entry.attended_classes, entry.total_classes, 85),
            can_skip=calculate_classes_can_skip(entry.attended_classes, entry.total_classes, 75),
        )
        for entry in data.entries
    ]


# -------------------------------
# Timetable
# -------------------------------

SLOT_TIMINGS = {
    "A1": ("08:00", "08:50"),
    "B1": ("09:00", "09:50"),
    "C1": ("10:00", "10:50"),
    "D1": ("11:00", "11:50"),
    "E1": ("12:00", "12:50"),
    "F1": ("14:00", "14:50"),
    "G1": ("15:00", "15:50"),
    "A2": ("14:00", "14:50"),
    "B2": ("15:00", "15:50"),
    "C2": ("16:00", "16:50"),
    "D2": ("17:00", "17:50"),
    "E2": ("18:00", "18:50"),
    "F2": ("19:00", "19:50"),
    "G2": ("08:00", "08:50"),
    "TA1": ("08:50", "09:40"),
    "TB1": ("09:50", "10:40"),
    "TC1": ("10:50", "11:40"),
    "TD1": ("11:50", "12:40"),
    "TE1": ("12:50", "13:40"),
    "TF1": ("14:50", "15:40"),
    "TG1": ("15:50", "16:40"),
    "TA2": ("14:50", "15:40"),
    "TB2": ("15:50", "16:40"),
    "TC2": ("16:50", "17:40"),
    "TD2": ("17:50", "18:40"),
    "TE2": ("18:50", "19:40"),
    "TF2": ("19:50", "20:40"),
    "TG2": ("08:50", "09:40"),
}
UNKNOWN_TIMING = ("00:00", "00:00")

_SLOT_CODE = re.compile(r"([A-Z]+\d+)")


def _timetable_course_map(soup):
    table = soup.find("table", id="timeTableStyle") or soup.find(
        "table", class_=lambda c: c and "table" in c
    )
    course_map = {}
    if table is None:
        return course_map
    for row in _table_rows(table):
        cells = _cells(row)
        if len(cells) < 9 or "code" in cells[2].lower():
            continue
        info = {
            "course_code": cells[2],
            "course_name": cells[3],
            "class_type": _class_type(cells[4]),
            "slot": cells[7],
            "venue": cells[8],
            "faculty": _at(cells, 9),
        }
        for slot in cells[7].split("+"):
            course_map[slot.strip()] = info
    return course_map


def _grid_day_rows(grid):
    """(day, row) pairs. Rows are matched by their day label, else positionally."""
    rows = grid.find_all("tr")
    labelled = []
    current = None
    for row in rows:
        first = row.find(["td", "th"])
        label = _text(first).upper()[:3] if first is not None else ""
        if label in DAYS:
            current = label
            labelled.append((current, row))
        elif current is not None:
            labelled.append((current, row))
    if labelled:
        return labelled
    return list(zip(DAYS, rows[: len(DAYS)]))


def scrape_timetable_from_html(html, semester_id):
    semester_name = _semester_name(html)
    soup = _soup(html)
    course_map = _timetable_course_map(soup)
    days = {day: [] for day in DAYS}

    grid = soup.find("table", id=re.compile(r"^(?:divTimeTable|timetable)$"))
    if grid is not None:
        for day, row in _grid_day_rows(grid):
            for td in row.find_all("td", recursive=False):
                content = _text(td)
                if not content or content == "-":
                    continue
                match = _SLOT_CODE.search(content)
                if not match:
                    continue
                slot_code = match.group(1)
                info = course_map.get(slot_code)
                if info is None:
                    continue
                start, end = SLOT_TIMINGS.get(slot_code, UNKNOWN_TIMING)
                days[day].append(
                    TimetableSlot(
                        start_time=start,
                        end_time=end,
                        course_code=info["course_code"],
                        course_name=info["course_name"],
                        class_type=info["class_type"],
                        faculty=info["faculty"],
                        venue=info["venue"],
                        slot=slot_code,
                    )
                )

    return TimetableData(
        semester_id=semester_id,
        semester_name=semester_name,
        days=[
            TimetableDay(day=day, slots=sorted(days[day], key=lambda s: s.start_time))
            for day in DAYS
        ],
    )


# -------------------------------
# Curriculum
# -------------------------------

CATEGORY_NAMES = {
    "PC": "Program Core",
    "PCC": "Program Core",
    "PE": "Program Elective",
    "UC": "University Core",
    "UCC": "University Core",
    "UE": "University Elective",
    "NC": "Non-Credit",
    "CON": "Concentration",
    "OEC": "Open Elective",
    "PMT": "Project/Thesis",
}
_CATEGORY_CODE = re.compile(r"\b(PCC|PC|PE|UCC|UC|UE|NC|CON|OEC|PMT)\b")
_LETTER_GRADE = re.compile(r"^[SABCDEF][+-]?$")


def _curriculum_category(table):
    for th in table.find_all("th", colspan=True):
        match = _CATEGORY_CODE.search(_text(th))
        if match:
            return match.group(1)
    match = _CATEGORY_CODE.search(_text(table))
    return match.group(1) if match else None


def _credit_guess(cells):
    # Credits never exceed 10; scan from the right, stopping before code/title.
    for cell in reversed(cells[2:]):
        number = _leading_int(cell)
        if number is not None and number <= 10:
            return number
    return 0


def scrape_curriculum_from_html(html):
    soup = _soup(html)
    data = CurriculumData()
    for table in _leaf_tables(soup):
        table_text = _text(table)
        if "Credit" not in table_text and "L-T-P" not in table_text:
            continue
        code = _curriculum_category(table)
        if code is None:
            continue

        courses = []
        required = earned = 0
        for row in _table_rows(table):
            cells = _cells(row)
            if len(cells) < 3:
                continue
            course_code, course_name = cells[0], cells[1]
            if "code" in course_code.lower() or "title" in course_name.lower():
                continue

            credits = _credit_guess(cells)
            status, grade = "pending", ""
            for cell in cells:
                if _LETTER_GRADE.match(cell):
                    grade, status = cell, "completed"
                    earned += credits
                    break
                lowered = cell.lower()
                if "registered" in lowered or "ongoing" in lowered:
                    status = "in_progress"
            required += credits
            courses.append(
                CurriculumCourse(
                    course_code=course_code,
                    course_name=course_name,
                    credits=credits,
                    status=status,
                    grade=grade,
                )
            )

        if courses:
            data.categories.append(
                CurriculumCategory(
                    category=code,
                    category_name=CATEGORY_NAMES.get(code, code),
                    required_credits=required,
                    earned_credits=earned,
                    courses=courses,
                )
            )
            data.total_required_credits += required
            data.total_earned_credits += earned
    return data


# -------------------------------
# Course page
# -------------------------------


def _page_text(soup):
    lines = (_squash(line) for line in soup.get_text("\n").splitlines())
    return "\n".join(line for line in lines if line)


def _material_type(url):
    lowered = url.lower()
    if ".pdf" in lowered:
        return "pdf"
    if "youtube" in lowered or "video" in lowered:
        return "video"
    return "link"


def scrape_course_page_from_html(html):
    soup = _soup(html)
    text = _page_text(soup)
    page = CoursePageData()

    match = re.search(r"Course\s*Code[:\s]*([A-Z]{2,5}\d{4}[A-Z]?)", text, re.I)
    page.course_code = match.group(1) if match else ""
    match = re.search(r"Course\s*(?:Title|Name)[:\s]*([^\n]+)", text, re.I)
    page.course_name = _squash(match.group(1)) if match else ""
    match = re.search(r"Credits?[:\s]*(\d+)", text, re.I)
    page.credits = int(match.group(1)) if match else 0
    match = re.search(r"Faculty[:\s]*([^\n]+)", text, re.I) or re.search(
        r"Instructor[:\s]*([^\n]+)", text, re.I
    )
    page.faculty = _squash(match.group(1)) if match else ""

    module_re = re.compile(
        r"Module\s*(\d+)[:\s]*(.*?)(?=Module\s*\d+|Course\s*Outcome|Reference|\Z)", re.I | re.S
    )
    for match in module_re.finditer(text):
        number = int(match.group(1))
        lines = [line for line in match.group(2).split("\n") if line.strip()]
        title = _squash(lines[0]) if lines else f"Module {number}"
        topics = []
        for line in lines[1:]:
            topic = re.match(r"^\s*(?:[-•]|\d+\.)\s*(.+)$", line)
            if topic and _squash(topic.group(1)):
                topics.append(_squash(topic.group(1)))
        hours = re.search(r"(\d+)\s*(?:hours?|hrs?)\b", match.group(2), re.I)
        page.syllabus.append(
            SyllabusModule(
                module_number=number,
                title=title,
                topics=topics,
                hours=int(hours.group(1)) if hours else 0,
            )
        )

    section = re.search(r"Course\s*Outcomes?(.*?)(?=Reference|Textbook|Material|\Z)", text, re.I | re.S)
    if section:
        for match in re.finditer(r"^\s*(?:CO\s*)?(\d+)[.:\s]+(.+)$", section.group(1), re.M):
            page.outcomes.append(CourseOutcome(id=f"CO{match.group(1)}", description=_squash(match.group(2))))

    section = re.search(r"(?:Reference|Textbook)s?(.*?)(?=Material|Course\s*Page|\Z)", text, re.I | re.S)
    if section:
        book_re = re.compile(
            r"^\s*(?:[-•]|\d+[.)])\s*([^,\n]+)(?:,\s*([^,\n]+))?(?:,\s*([^,\n]+))?", re.M
        )
        for match in book_re.finditer(section.group(1)):
            title = _squash(match.group(1))
            if len(title) > 3:
                page.reference_books.append(
                    ReferenceBook(
                        title=title,
                        author=_squash(match.group(2)),
                        publisher=_squash(match.group(3)),
                    )
                )

    for link in soup.find_all("a", href=True):
        title = _text(link)
        lowered = title.lower()
        if not title or "back" in lowered or "home" in lowered:
            continue
        page.materials.append(CourseMaterial(title=title, type=_material_type(link["href"]), url=link["href"]))
    return page


# -------------------------------
# Marks
# -------------------------------

MARK_CLASS_TYPES = ("ETH", "ELA", "EPJ", "TH")


def exam_type_for(assessment_name):
    lowered = assessment_name.lower()
    if "cat" in lowered and "1" in lowered:
        return "CAT1"
    if "cat" in lowered and "2" in lowered:
        return "CAT2"
    if "fat" in lowered or "final" in lowered:
        return "FAT"
    if "quiz" in lowered:
        return "QUIZ"
    if "lab" in lowered:
        return "LAB"
    if "project" in lowered:
        return "PROJECT"
    return "DA"


def _mark_columns(cells):
    """
    (assessment, max marks, weightage, status, scored text) for one row.
    Full-width rows have fixed columns; narrower layouts fall back to
    whichever neighbouring cell is filled.
    """
    if len(cells) >= 12:
        status = cells[10] or cells[11]
        scored_text = cells[11] or cells[10]
        return (
            cells[6],
            _leading_float(cells[7]) or 0,
            _leading_float(cells[8]) or 0,
            status.lower(),
            scored_text,
        )
    return (
        _at(cells, 6) or _at(cells, 4),
        _leading_float(_at(cells, 7) or _at(cells, 5)) or 0,
        _leading_float(_at(cells, 8) or _at(cells, 6)) or 0,
        (_at(cells, 10) or _at(cells, 11) or _at(cells, 9)).lower(),
        _at(cells, 11) or _at(cells, 10) or _at(cells, 8),
    )


def scrape_marks_from_html(html, semester_id):
    soup = _soup(html)
    semester_name = _semester_name(soup.get_text(" "))
    courses = []
    current = None

    for row in _body_rows(soup):
        cells = _cells(row)
        if len(cells) < 8:
            continue
        course_code, course_title = cells[1], cells[2]
        if "code" in course_code.lower() or "title" in course_title.lower():
            continue
        if len(course_code) < 3:
            continue

        if current is None or current.course_code != course_code:
            if current is not None:
                courses.append(current)
            current = CourseMarks(
                course_code=course_code,
                course_name=course_title,
                class_type=_class_type(cells[3], MARK_CLASS_TYPES),
                faculty=cells[5],
            )

        assessment, max_marks, weightage, status_or_score, scored_text = _mark_columns(cells)

        status, scored = "pending", None
        if "absent" in status_or_score:
            status, scored = "absent", 0.0
        elif "present" in status_or_score or _leading_float(scored_text) is not None:
            status, scored = "graded", _leading_float(scored_text)

        if assessment and max_marks > 0:
            current.marks.append(
                ExamMark(
                    exam_type=exam_type_for(assessment),
                    exam_name=assessment,
                    max_marks=max_marks,
                    scored_marks=scored,
                    weightage=weightage,
                    status=status,
                )
            )
            if scored is not None:
                current.total_weighted_score += (scored / max_marks) * weightage

    if current is not None:
        courses.append(current)
    return MarksData(semester_id=semester_id, semester_name=semester_name, courses=courses)


# -------------------------------
# Grades
# -------------------------------

GRADE_POINTS = {"S": 10, "A": 9, "B": 8, "C": 7, "D": 6, "E": 5, "F": 0, "N": 0, "W": 0}
NON_EARNING_GRADES = ("F", "N", "W")
GRADE_CLASS_TYPES = ("ETH", "ELA", "EPJ", "TH", "LO")

_GRADE_LETTER = re.compile(r"^[SABCDEFNW]$")
_ROW_SEMESTER = re.compile(r"(?:Winter|Fall|Summer)\s+(?:Semester\s+)?(\d{4}-\d{2})", re.I)
_TABLE_SEMESTER = re.compile(r"((?:Winter|Fall|Summer)\s+\d{4})", re.I)


def _grade_row(cells):
    grade, credits, title, class_type = "", 0, "", DEFAULT_CLASS_TYPE
    for cell in cells:
        if _GRADE_LETTER.match(cell):
            grade = cell
        number = _leading_float(cell)
        if number is not None and 1 <= number <= 10 and not credits:
            credits = number
        if cell.upper() in GRADE_CLASS_TYPES:
            class_type = cell.upper()
        if len(cell) > 10 and len(cell) > len(title) and not cell[0].isdigit():
            title = cell
    code = cells[0] or cells[1]
    return CourseGrade(
        course_code=code,
        course_name=title or cells[1],
        class_type=class_type,
        credits=credits,
        grade=grade,
        grade_points=GRADE_POINTS.get(grade, 0),
    )


def _close_semester(semester_id, semester_name, courses):
    registered = sum(c.credits for c in courses)
    earning = [c for c in courses if c.grade and c.grade not in NON_EARNING_GRADES]
    earned = sum(c.credits for c in earning)
    points = sum(c.credits * c.grade_points for c in earning)
    return SemesterGrades(
        semester_id=semester_id,
        semester_name=semester_name,
        courses=courses,
        sgpa=round2(points / earned) if earned > 0 else 0.0,
        credits_registered=registered,
        credits_earned=earned,
    )


def scrape_grades_from_html(html, semester_id=""):
    """
    Grade history. A semester heading row inside a table starts a new
    semester group; SGPA is the credit-weighted grade-point average over
    courses that earned credit. Page totals win over derived ones.
    """
    soup = _soup(html)
    text = _page_text(soup)
    grades = GradesData()

    match = re.search(r"CGPA[:\s]*([0-9.]+)", text, re.I) or re.search(
        r"Cumulative[^\n]*GPA[:\s]*([0-9.]+)", text, re.I
    )
    if match:
        grades.cgpa = _leading_float(match.group(1)) or 0.0
    match = re.search(r"(?:Total\s+)?Credits?\s+Registered[:\s]*(\d+)", text, re.I)
    if match:
        grades.total_credits_registered = int(match.group(1))
    match = re.search(r"(?:Total\s+)?Credits?\s+Earned[:\s]*(\d+)", text, re.I)
    if match:
        grades.total_credits_earned = int(match.group(1))

    for table in _leaf_tables(soup):
        table_text = _text(table)
        if "grade" not in table_text.lower() and "credit" not in table_text.lower():
            continue
        heading = _ROW_SEMESTER.search(table_text) or _TABLE_SEMESTER.search(table_text)
        semester_name = heading.group(0) if heading else ""

        courses = []
        for row in _table_rows(table):
            cells = _cells(row)
            if not cells:
                continue
            in_row = _ROW_SEMESTER.search(" ".join(cells))
            if in_row:
                if courses:
                    grades.semesters.append(_close_semester(semester_id, semester_name, courses))
                    courses = []
                semester_name = in_row.group(0)
                continue
            if len(cells) < 4:
                continue
            code = (cells[0] or cells[1]).lower()
            if "code" in code or "total" in code or "cgpa" in code:
                continue
            course = _grade_row(cells)
            if len(course.course_code) < 3:
                continue
            courses.append(course)

        if courses:
            grades.semesters.append(_close_semester(semester_id, semester_name, courses))

    if not grades.total_credits_registered:
        grades.total_credits_registered = sum(s.credits_registered for s in grades.semesters)
    parsed_credits = sum(s.credits_earned for s in grades.semesters)
    if not grades.total_credits_earned:
        grades.total_credits_earned = parsed_credits
    if not grades.cgpa and parsed_credits > 0:
        points = sum(s.sgpa * s.credits_earned for s in grades.semesters)
        grades.cgpa = round2(points / parsed_credits)
    return grades


def scrape_dashboard_cgpa(html):
    text = _page_text(_soup(html))
    cgpa = re.search(r"CGPA[:\s]*([0-9.]+)", text, re.I)
    credits = re.search(r"Credits[:\s]*(\d+)", text, re.I)
    return DashboardCgpa(
        cgpa=(_leading_float(cgpa.group(1)) or 0.0) if cgpa else 0.0,
        total_credits=int(credits.group(1)) if credits else 0,
    )


# -------------------------------
# Exam schedule
# -------------------------------

EXAM_CATEGORIES = (
    ("CAT1", "CAT - I", (r"\bCAT[\s-]*(?:1|I)\b", r"Continuous\s+Assessment\s+Test[\s-]*(?:1|I)\b")),
    ("CAT2", "CAT - II", (r"\bCAT[\s-]*(?:2|II)\b", r"Continuous\s+Assessment\s+Test[\s-]*(?:2|II)\b")),
    ("FAT", "Final Assessment Test", (r"\bFAT\b", r"Final\s+Assessment", r"End\s+Semester")),
)
DEFAULT_EXAM_CATEGORY = "FAT"
_HEADING_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6", "caption", "legend", "b", "strong", "label", "p", "span", "div"]

_EXAM_DATE = (re.compile(r"\d{1,2}[-/]\w{3}[-/]\d{2,4}"), re.compile(r"\d{1,2}[-/]\d{1,2}[-/]\d{2,4}"))
_EXAM_DAY = re.compile(r"^(MON|TUE|WED|THU|FRI|SAT|SUN)$", re.I)
_EXAM_SESSION = re.compile(r"^(FN|AN|FORENOON|AFTERNOON)$", re.I)
_EXAM_TIME = re.compile(r"\d{1,2}:\d{2}\s*(?:AM|PM)?", re.I)
_EXAM_VENUE = re.compile(r"^[A-Z]{2,4}[-\s]?\d{3}", re.I)
_EXAM_SEAT = re.compile(r"^(?:Seat\s*)?#?\d{1,4}$", re.I)


def exam_category_for(label):
    for category, _, patterns in EXAM_CATEGORIES:
        if any(re.search(p, label, re.I) for p in patterns):
            return category
    return None


def _exam_slot(cells):
    course_code = cells[0]
    lowered = course_code.lower()
    if "code" in lowered or "course" in lowered or len(course_code) < 3:
        return None

    exam_date = day = time_ = venue = seat = ""
    session = "FN"
    for cell in cells:
        if any(p.search(cell) for p in _EXAM_DATE):
            exam_date = cell
        if _EXAM_DAY.match(cell):
            day = cell.upper()
        if _EXAM_SESSION.match(cell):
            session = "AN" if cell.upper().startswith("A") else "FN"
        if not time_ and _EXAM_TIME.search(cell):
            time_ = cell
        if _EXAM_VENUE.match(cell):
            venue = cell
        if _EXAM_SEAT.match(cell):
            seat = re.sub(r"\D", "", cell)
    if not exam_date:
        return None
    return ExamSlot(
        course_code=course_code,
        course_name=cells[1],
        course_type=_class_type(cells[2], MARK_CLASS_TYPES),
        slot=cells[3],
        exam_date=exam_date,
        day=day,
        session=session,
        time=time_,
        venue=venue,
        seat_number=seat,
    )


def scrape_exam_schedule_from_html(html, semester_id):
    """
    Walks the page in document order. Label rows ("CAT1", "FAT", ...) and
    headings switch the current category; data rows land in whichever
    category was last announced.
    """
    soup = _soup(html)
    semester_name = _semester_name(soup.get_text(" "))
    slots = {category: [] for category, _, _ in EXAM_CATEGORIES}
    current = None

    for el in soup.find_all(["tr"] + _HEADING_TAGS):
        if el.name != "tr":
            if el.find_parent("tr") is not None or el.find(["table", "tr"]) is not None:
                continue
            label = _text(el)
            if label and len(label) < 60:
                current = exam_category_for(label) or current
            continue
        cells = _cells(el)
        if len(cells) < 5:
            label = _text(el)
            if label and len(label) < 60:
                current = exam_category_for(label) or current
            continue
        slot = _exam_slot(cells)
        if slot is not None:
            slots[current or DEFAULT_EXAM_CATEGORY].append(slot)

    exams = [
        ExamCategory(category=category, category_name=name, slots=slots[category])
        for category, name, _ in EXAM_CATEGORIES
        if slots[category]
    ]
    return ExamScheduleData(semester_id=semester_id, semester_name=semester_name, exams=exams)


# -------------------------------
# Profile
# -------------------------------

_MAJOR_HEADER = (
    r"(?:PERSONAL|FAMILY|PARENT|PROCTOR|FACULTY\s*ADVISOR|FA\s*DETAILS|HOSTEL|ADDRESS)"
    r"\s*(?:INFORMATION|DETAILS)"
)
_LABEL_TAGS = ["td", "th", "label", "span", "div", "b", "strong", "p", "dt"]
_EMPTY_VALUES = ("-", "N/A", "NIL", "null")
_REGNO = re.compile(r"\b(\d{2}[A-Z]{2,4}\d{4,5})\b")
_VIT_EMAIL = re.compile(r"([a-zA-Z0-9._%+-]+@vitstudent\.ac\.in)", re.I)


def _valid_value(value):
    if not value or value in _EMPTY_VALUES or len(value) >= 200:
        return False
    upper = value.upper()
    return not ("INFORMATION" in upper or "DETAILS" in upper or "SECTION" in upper)


def _value_after(label_el):
    sibling = label_el.find_next_sibling()
    if sibling is None and label_el.parent is not None:
        sibling = label_el.parent.find_next_sibling()
    return _text(sibling)


def extract_field(soup, labels):
    """
    Label-driven lookup: find an element whose whole text is the label
    (an optional trailing colon allowed) and take the element right after it.
    """
    if soup is None:
        return ""
    for label in labels:
        pattern = re.compile(rf"^\s*{label}\s*[:.]?\s*$", re.I)
        for el in soup.find_all(_LABEL_TAGS):
            if not pattern.match(el.get_text(" ")):
                continue
            value = _value_after(el)
            if _valid_value(value):
                return value
    return ""


def _section(html, headers):
    """Fragment from a section header up to the next major section header."""
    for header in headers:
        match = re.search(rf"{header}.*?(?={_MAJOR_HEADER}|\Z)", html, re.I | re.S)
        if match:
            return match.group(0)
    return ""


def _fragment(html_fragment):
    return BeautifulSoup(html_fragment, "lxml") if html_fragment else None


def _student_name(soup):
    for p in soup.find_all("p", style=True):
        style = p["style"].replace(" ", "").lower()
        name = _text(p)
        if "text-align:center" in style and "font-weight:bold" in style and re.match(r"^[A-Z][A-Z\s]+$", name):
            return name
    img = soup.find("img", class_=lambda c: c and c.startswith("img"))
    if img is not None:
        p = img.find_next("p")
        name = _text(p)
        if re.match(r"^[A-Z][A-Z\s]+$", name):
            return name
    return ""


def _photo(soup):
    for img in soup.find_all("img", src=True):
        src = img["src"]
        if re.match(r"data:(?:null|image/[^;]+);base64,", src, re.I):
            return src
    return ""


def scrape_profile_from_html(html):
    normalized = normalize_html(html)
    soup = BeautifulSoup(normalized, "lxml")
    text = soup.get_text(" ")

    family = _fragment(_section(normalized, [r"FAMILY\s*(?:INFORMATION|DETAILS)", r"PARENT[S']?\s*(?:INFORMATION|DETAILS)"]))
    proctor = _fragment(
        _section(
            normalized,
            [
                r"PROCTOR\s*(?:INFORMATION|DETAILS)",
                r"FA\s*(?:INFORMATION|DETAILS)",
                r"FACULTY\s*ADVISOR\s*(?:INFORMATION|DETAILS)",
            ],
        )
    )
    hostel_html = _section(normalized, [r"HOSTEL\s*(?:INFORMATION|DETAILS)"])
    address = _fragment(_section(normalized, [r"(?:PERMANENT\s*)?ADDRESS\s*(?:INFORMATION|DETAILS)"]))
    father_match = re.search(r"FATHER\s*DETAILS.*?(?=MOTHER\s*DETAILS|\Z)", normalized, re.I | re.S)
    father = _fragment(father_match.group(0)) if father_match else None
    mother_match = re.search(r"MOTHER\s*DETAILS.*?(?=GUARDIAN|\Z)", normalized, re.I | re.S)
    mother = _fragment(mother_match.group(0)) if mother_match else None

    logger.debug(
        f"Profile sections: family={family is not None} proctor={proctor is not None} "
        f"hostel={len(hostel_html)} address={address is not None}"
    )

    registration_number = extract_field(soup, [r"REGISTER\s*(?:NUMBER|NO)", r"REGISTRATION\s*(?:NUMBER|NO)"])
    if not _REGNO.fullmatch(registration_number):
        match = _REGNO.search(text)
        registration_number = match.group(1) if match else ""

    vit_email = _VIT_EMAIL.search(text)
    search_address = address or soup
    address_parts = [
        extract_field(search_address, [r"STREET\s*(?:NAME)?"]),
        extract_field(search_address, [r"AREA\s*(?:NAME)?", r"LOCALITY"]),
        extract_field(search_address, [r"CITY", r"TOWN"]),
        extract_field(search_address, [r"STATE", r"PROVINCE"]),
        extract_field(search_address, [r"PINCODE", r"PIN\s*CODE", r"ZIP\s*(?:CODE)?", r"POSTAL\s*CODE"]),
    ]

    personal = PersonalInfo(
        name=extract_field(soup, [r"STUDENT\s*NAME", r"NAME"]) or _student_name(soup),
        registration_number=registration_number,
        application_number=extract_field(soup, [r"APPLICATION\s*(?:NUMBER|NO)", r"APPL(?:ICATION)?\s*NO"]),
        date_of_birth=extract_field(soup, [r"DATE\s*OF\s*BIRTH", r"DOB", r"D\.O\.B"]),
        gender=extract_field(soup, [r"GENDER", r"SEX"]),
        blood_group=extract_field(soup, [r"BLOOD\s*GROUP", r"BLOOD\s*TYPE"]),
        email=vit_email.group(1) if vit_email else extract_field(soup, [r"PERSONAL\s*EMAIL", r"EMAIL\s*ID"]),
        phone=extract_field(soup, [r"MOBILE\s*(?:NUMBER|NO)?", r"PHONE\s*(?:NUMBER|NO)?", r"CONTACT\s*(?:NUMBER|NO)?"]),
        address=", ".join(part for part in address_parts if part),
        nationality=extract_field(soup, [r"NATIONALITY", r"NATION"]),
    )

    educational = EducationalInfo(
        school=extract_field(soup, [r"SCHOOL\s*(?:NAME)?"]),
        program=extract_field(soup, [r"PROGRAM\s*(?:&|AND)\s*BRANCH", r"PROGRAMME?"]),
    )

    family_scope = father or family or soup
    family_info = FamilyInfo(
        father_name=extract_field(family_scope, [r"FATHER\s*NAME", r"NAME"] if father else [r"FATHER\s*NAME"]),
        father_occupation=extract_field(family_scope, [r"OCCUPATION"]),
        father_phone=extract_field(family_scope, [r"MOBILE\s*(?:NUMBER|NO)"]),
        mother_name=extract_field(mother, [r"MOTHER\s*NAME", r"NAME"]),
        mother_occupation=extract_field(mother, [r"OCCUPATION"]),
        mother_phone=extract_field(mother, [r"MOBILE\s*(?:NUMBER|NO)"]),
        guardian_name=extract_field(family or soup, [r"GUARDIAN\s*NAME", r"GUARDIAN\s*INFO"]),
        guardian_phone=extract_field(family or soup, [r"GUARDIAN\s*(?:MOBILE|PHONE)\s*(?:NUMBER|NO)?"]),
    )

    proctor_scope = proctor or soup
    proctor_info = ProctorInfo(
        name=extract_field(proctor_scope, [r"FACULTY\s*NAME", r"PROCTOR\s*NAME"]),
        email=extract_field(proctor_scope, [r"FACULTY\s*EMAIL", r"PROCTOR\s*EMAIL"]),
        phone=extract_field(proctor_scope, [r"FACULTY\s*MOBILE\s*NUMBER", r"PROCTOR\s*MOBILE\s*NUMBER"]),
        cabin=extract_field(proctor_scope, [r"CABIN(?:\s*NO)?"]),
    )

    hostel = None
    # A bare heading is not a hostel record; it needs a block or a room.
    if len(hostel_html) > 50:
        scope = _fragment(hostel_html)
        block = extract_field(scope, [r"BLOCK\s*NAME"])
        room = extract_field(scope, [r"ROOM\s*NO\.?", r"ROOM\s*NUMBER"])
        if block or room:
            hostel = HostelInfo(
                hostel_name=block,
                room_number=room,
                block_name=block,
                bed_number=extract_field(scope, [r"BED\s*TYPE", r"BED\s*NO\.?"]),
            )

    return ProfileData(
        personal=personal,
        educational=educational,
        family=family_info,
        proctor=proctor_info,
        hostel=hostel,
        photo_url=_photo(soup),
    )
