from .base import Base

# Identity + catalog (read-only for the engine)
from .user import User, UserRole
from .course import Course, Unit, Lesson

# Progression state
from .enrollment import Enrollment
from .unit_progress import UnitProgress, LessonProgress, UnitStatus

# Assessment
from .question_bank import QuestionBank, Question, BankType
from .quiz_attempt import QuizAttempt, QuizAnswer

# Audit
from .progress_audit import ProgressAuditLog
