"""
Domain records produced by the extraction layer.

Every record is a plain dataclass. Fields the portal did not supply are
filled with "", 0 or an explicit fallback code, never left missing, so
callers can render them without guarding each attribute.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import List, Optional

# Class/course type codes as VTOP prints them. TH is the fallback.
CLASS_TYPES = ("ETH", "ELA", "EPJ", "SS", "TH")
DEFAULT_CLASS_TYPE = "TH"

DAYS = ("MON", "TUE", "WED", "THU", "FRI", "SAT")


def to_dict(record):
    """JSON-ready dict for any record (or list of records)."""
    if isinstance(record, list):
        return [to_dict(r) for r in record]
    return asdict(record)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Identity:
    name: str
    registration_number: str
    login_id: str


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='********')"


@dataclass
class CaptchaChallenge:
    """Result of the pre-login handshake: the image plus the session it is bound to."""

    captcha_image: str
    csrf: str
    session_id: str
    server_id: Optional[str] = None


@dataclass
class LoginResult:
    success: bool
    message: str = ""
    error_code: str = ""
    identity: Optional[Identity] = None
    new_session_id: Optional[str] = None
    new_csrf: Optional[str] = None
    new_server_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Academic records
# ---------------------------------------------------------------------------


@dataclass
class Semester:
    id: str
    name: str
    is_current: bool = False


@dataclass
class AttendanceEntry:
    course_code: str
    course_name: str
    class_type: str
    slot: str
    faculty: str
    attended_classes: int
    total_classes: int
    attendance_percentage: int
    is_debarred: bool


@dataclass
class AttendanceData:
    semester_id: str
    semester_name: str
    entries: List[AttendanceEntry] = field(default_factory=list)
    last_updated: str = ""


@dataclass
class AttendanceInsight:
    course_code: str
    classes_needed_for_75: float
    classes_needed_for_85: float
    can_skip: float


@dataclass
class TimetableSlot:
    start_time: str
    end_time: str
    course_code: str
    course_name: str
    class_type: str
    faculty: str
    venue: str
    slot: str


@dataclass
class TimetableDay:
    day: str
    slots: List[TimetableSlot] = field(default_factory=list)


@dataclass
class TimetableData:
    semester_id: str
    semester_name: str
    days: List[TimetableDay] = field(default_factory=list)


@dataclass
class CurriculumCourse:
    course_code: str
    course_name: str
    credits: int
    status: str  # completed | in_progress | pending
    grade: str = ""


@dataclass
class CurriculumCategory:
    category: str
    category_name: str
    required_credits: int
    earned_credits: int
    courses: List[CurriculumCourse] = field(default_factory=list)


@dataclass
class CurriculumData:
    total_required_credits: int = 0
    total_earned_credits: int = 0
    categories: List[CurriculumCategory] = field(default_factory=list)


@dataclass
class SyllabusModule:
    module_number: int
    title: str
    topics: List[str] = field(default_factory=list)
    hours: int = 0


@dataclass
class CourseOutcome:
    id: str
    description: str


@dataclass
class ReferenceBook:
    title: str
    author: str = ""
    publisher: str = ""


@dataclass
class CourseMaterial:
    title: str
    type: str  # pdf | video | link
    url: str = ""


@dataclass
class CoursePageData:
    course_code: str = ""
    course_name: str = ""
    credits: int = 0
    faculty: str = ""
    syllabus: List[SyllabusModule] = field(default_factory=list)
    outcomes: List[CourseOutcome] = field(default_factory=list)
    reference_books: List[ReferenceBook] = field(default_factory=list)
    materials: List[CourseMaterial] = field(default_factory=list)


@dataclass
class ExamMark:
    exam_type: str  # CAT1 | CAT2 | FAT | DA | QUIZ | LAB | PROJECT
    exam_name: str
    max_marks: float
    scored_marks: Optional[float]
    weightage: float
    status: str  # graded | pending | absent


@dataclass
class CourseMarks:
    course_code: str
    course_name: str
    class_type: str
    faculty: str
    marks: List[ExamMark] = field(default_factory=list)
    total_weighted_score: float = 0.0


@dataclass
class MarksData:
    semester_id: str
    semester_name: str
    courses: List[CourseMarks] = field(default_factory=list)


@dataclass
class CourseGrade:
    course_code: str
    course_name: str
    class_type: str
    credits: float
    grade: str
    grade_points: int


@dataclass
class SemesterGrades:
    semester_id: str
    semester_name: str
    courses: List[CourseGrade] = field(default_factory=list)
    sgpa: float = 0.0
    credits_registered: float = 0
    credits_earned: float = 0


@dataclass
class GradesData:
    semesters: List[SemesterGrades] = field(default_factory=list)
    cgpa: float = 0.0
    total_credits_earned: float = 0
    total_credits_registered: float = 0


@dataclass
class ExamSlot:
    course_code: str
    course_name: str
    course_type: str
    slot: str
    exam_date: str
    day: str
    session: str  # FN | AN
    time: str
    venue: str
    seat_number: str = ""


@dataclass
class ExamCategory:
    category: str  # CAT1 | CAT2 | FAT
    category_name: str
    slots: List[ExamSlot] = field(default_factory=list)


@dataclass
class ExamScheduleData:
    semester_id: str
    semester_name: str
    exams: List[ExamCategory] = field(default_factory=list)


@dataclass
class DashboardCgpa:
    cgpa: float = 0.0
    total_credits: int = 0


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


@dataclass
class PersonalInfo:
    name: str = ""
    registration_number: str = ""
    application_number: str = ""
    date_of_birth: str = ""
    gender: str = ""
    blood_group: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    nationality: str = ""


@dataclass
class EducationalInfo:
    school: str = ""
    program: str = ""
    branch: str = ""
    admission_year: str = ""
    expected_graduation: str = ""


@dataclass
class FamilyInfo:
    father_name: str = ""
    father_occupation: str = ""
    father_phone: str = ""
    mother_name: str = ""
    mother_occupation: str = ""
    mother_phone: str = ""
    guardian_name: str = ""
    guardian_phone: str = ""


@dataclass
class ProctorInfo:
    name: str = ""
    email: str = ""
    phone: str = ""
    cabin: str = ""


@dataclass
class HostelInfo:
    hostel_name: str
    room_number: str
    block_name: str
    bed_number: str = ""


@dataclass
class ProfileData:
    personal: PersonalInfo = field(default_factory=PersonalInfo)
    educational: EducationalInfo = field(default_factory=EducationalInfo)
    family: FamilyInfo = field(default_factory=FamilyInfo)
    proctor: ProctorInfo = field(default_factory=ProctorInfo)
    hostel: Optional[HostelInfo] = None
    photo_url: str = ""
