from app.db.repo.affiliates_repo import AffiliatesRepo
from app.db.repo.coupons_repo import CouponsRepo
from app.db.repo.courses_repo import CoursesRepo
from app.db.repo.enrollments_repo import EnrollmentsRepo
from app.db.repo.retry_jobs_repo import RetryJobsRepo

__all__ = [
    "AffiliatesRepo",
    "CouponsRepo",
    "CoursesRepo",
    "EnrollmentsRepo",
    "RetryJobsRepo",
]
