"""
博雅课程接口的数据模型。

上游字段为 camelCase，这里统一转换为 snake_case，并忽略未知字段。
"""
from enum import Enum
from typing import Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class BykcModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ApiResponse(BykcModel, Generic[T]):
    """接口响应包装，status == "0" 表示成功"""
    status: str
    errmsg: Optional[str] = ""
    token: Optional[str] = None
    data: Optional[T] = None

    @field_validator("status", mode="before")
    @classmethod
    def _status_as_str(cls, value):
        return str(value)

    @property
    def is_success(self) -> bool:
        return self.status == "0"


class Term(BykcModel):
    id: int
    term_name: str
    plan_id: int = 0
    grade: Optional[str] = None
    graduation: bool = False
    del_flag: int = 0


class College(BykcModel):
    id: int
    college_name: str
    open_course_permission: bool = True
    college_code: Optional[str] = None
    del_flag: int = 0


class Role(BykcModel):
    id: int
    role_name: str
    del_flag: int = 0


class UserProfile(BykcModel):
    id: int
    employee_id: str
    real_name: str
    term: Optional[Term] = None
    college: Optional[College] = None
    role: Optional[Role] = None
    student_no: Optional[str] = None
    student_type: Optional[str] = None
    class_code: Optional[str] = None
    notice_switch: Optional[bool] = None
    del_flag: int = 0


class CourseKind(BykcModel):
    id: int
    kind_name: str
    parent_id: int = 0
    del_flag: int = 0


class Course(BykcModel):
    id: int
    course_name: str
    course_position: Optional[str] = None
    course_contact: Optional[str] = None
    course_contact_mobile: Optional[str] = None
    course_teacher: Optional[str] = None
    course_create_date: Optional[str] = None
    course_start_date: Optional[str] = None
    course_end_date: Optional[str] = None
    course_select_start_date: Optional[str] = None
    course_select_end_date: Optional[str] = None
    course_cancel_end_date: Optional[str] = None
    course_new_kind1: Optional[CourseKind] = None
    course_new_kind2: Optional[CourseKind] = None
    course_new_kind3: Optional[CourseKind] = None
    course_max_count: int = 0
    course_current_count: Optional[int] = None
    course_campus: Optional[str] = None
    course_desc: Optional[str] = None
    course_sign_type: Optional[int] = None
    course_sign_config: Optional[str] = None
    selected: Optional[bool] = None
    del_flag: int = 0


class CoursePage(BykcModel):
    content: List[Course] = []
    total_elements: int = 0
    total_pages: int = 0
    size: int = 0
    number: int = 0
    number_of_elements: int = 0


class ChosenCourse(BykcModel):
    id: int
    user_info: Optional[UserProfile] = None
    course_info: Optional[Course] = None
    select_date: Optional[str] = None
    homework: Optional[str] = None
    homework_attachment_name: Optional[str] = None
    homework_attachment_path: Optional[str] = None
    checkin: Optional[int] = None
    score: Optional[int] = None
    # "pass" 是关键字
    passed: Optional[int] = None
    sign_info: Optional[str] = None

    model_config = ConfigDict(
        alias_generator=lambda name: "pass" if name == "passed" else to_camel(name),
        populate_by_name=True,
        extra="ignore",
    )


class ChosenCoursePayload(BykcModel):
    course_list: List[ChosenCourse] = []


class Campus(BykcModel):
    id: int
    campus_name: str
    del_flag: int = 0


class Semester(BykcModel):
    id: int
    semester_name: Optional[str] = None
    semester_start_date: Optional[str] = None
    semester_end_date: Optional[str] = None
    del_flag: int = 0


class AllConfig(BykcModel):
    campus: List[Campus] = []
    college: List[College] = []
    role: List[Role] = []
    semester: List[Semester] = []
    term: List[Term] = []


class SignPoint(BykcModel):
    lat: float
    lng: float
    radius: float = 0.0


class SignConfig(BykcModel):
    """签到配置，来自课程的 courseSignConfig 字段 (JSON 字符串)"""
    sign_start_date: Optional[str] = None
    sign_end_date: Optional[str] = None
    sign_out_start_date: Optional[str] = None
    sign_out_end_date: Optional[str] = None
    sign_point_list: List[SignPoint] = []


class CourseActionResult(BykcModel):
    course_current_count: Optional[int] = None


class SignResult(BykcModel):
    id: Optional[int] = None
    user_info: Optional[UserProfile] = None
    course_info: Optional[Course] = None


class SubCategoryStats(BykcModel):
    assessment_count: int = 0
    select_assessment_count: int = 0
    complete_assessment_count: int = 0
    fail_assessment_count: int = 0
    undone_assessment_count: int = 0
    course_user_list: List[ChosenCourse] = []


class StatisticsData(BykcModel):
    statistical: Dict[str, Dict[str, SubCategoryStats]] = {}
    valid_count: int = 0


class CourseStatus(str, Enum):
    EXPIRED = "过期"
    SELECTED = "已选"
    PREVIEW = "预告"
    ENDED = "结束"
    FULL = "满员"
    AVAILABLE = "可选"


# ----------------------------------------------------------------------
# 服务层返回给调用方的结果
# ----------------------------------------------------------------------
class CourseView(BykcModel):
    """带状态的课程条目"""
    course: Course
    status: CourseStatus
    category: Optional[str] = None
    sub_category: Optional[str] = None
    sign_config: Optional[SignConfig] = None


class CourseListPage(BykcModel):
    courses: List[CourseView] = []
    total_elements: int = 0
    total_pages: int = 0
    page_number: int = 1
    page_size: int = 20


class ChosenCourseView(BykcModel):
    chosen: ChosenCourse
    sign_config: Optional[SignConfig] = None
    can_sign: bool = False
    can_sign_out: bool = False


class CategoryStatistics(BykcModel):
    category: str
    sub_category: str
    required: int
    passed: int
    satisfied: bool


class StatisticsSummary(BykcModel):
    valid_count: int = 0
    categories: List[CategoryStatistics] = []
