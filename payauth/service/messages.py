"""User-facing copy for the auth flows.

The frontend renders ``message`` verbatim, so product text (Arabic) lives here
and nowhere else. ``code`` values are stable and are what clients switch on.
"""

from __future__ import annotations

from typing import NamedTuple, Optional

NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 100
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128


class ErrorMessage(NamedTuple):
    code: str
    message: str
    field: Optional[str] = None


INVALID_CREDENTIALS = ErrorMessage(
    "INVALID_CREDENTIALS", "البريد إلكتروني أو كلمة المرور غير صحيحة"
)
USER_NOT_FOUND = ErrorMessage("USER_NOT_FOUND", "المستخدم غير موجود")
EMAIL_ALREADY_EXISTS = ErrorMessage(
    "EMAIL_ALREADY_EXISTS", "البريد الإلكتروني مستخدم بالفعل", "email"
)
INVALID_TOKEN = ErrorMessage("INVALID_TOKEN", "الرمز غير صالح")
TOKEN_EXPIRED = ErrorMessage("TOKEN_EXPIRED", "انتهت صلاحية الرمز")
TOKEN_REVOKED = ErrorMessage(
    "TOKEN_REVOKED", "تم إبطال الرمز. يرجى تسجيل الدخول مرة أخرى."
)
USER_INACTIVE = ErrorMessage("USER_INACTIVE", "المستخدم غير نشط")
USER_SUSPENDED = ErrorMessage("USER_SUSPENDED", "المستخدم معلق")
UNAUTHORIZED = ErrorMessage("UNAUTHORIZED", "المصادقة مطلوبة")
FORBIDDEN = ErrorMessage("FORBIDDEN", "ليس لديك إذن للوصول إلى هذا المورد")
INVALID_PASSWORD = ErrorMessage(
    "INVALID_PASSWORD", "كلمة المرور الحالية غير صحيحة", "currentPassword"
)


class Success:
    SIGN_UP = "تم إنشاء الحساب بنجاح"
    LOGIN = "تم تسجيل الدخول بنجاح"
    LOGOUT = "تم تسجيل الخروج بنجاح"
    PASSWORD_RESET_EMAIL_SENT = "تم إرسال رابط إعادة تعيين كلمة المرور إلى بريدك الإلكتروني"
    PASSWORD_CHANGED = "تم تغيير كلمة المرور بنجاح"


class Validation:
    NAME_MIN_LENGTH = f"يجب ألا يقل الاسم عن {NAME_MIN_LENGTH} حرفًا"
    NAME_MAX_LENGTH = f"يجب ألا يزيد الاسم عن {NAME_MAX_LENGTH} حرفًا"
    NAME_REQUIRED = "الاسم مطلوب"
    PASSWORD_MIN_LENGTH = f"يجب ألا تقل كلمة المرور عن {PASSWORD_MIN_LENGTH} حرفًا"
    PASSWORD_MAX_LENGTH = f"يجب ألا تزيد كلمة المرور عن {PASSWORD_MAX_LENGTH} حرفًا"
    PASSWORD_FORMAT = (
        "يجب أن تحتوي كلمة المرور على حرف كبير واحد على الأقل، "
        "وحرف صغير واحد على الأقل، ورقم واحد على الأقل"
    )
    PASSWORD_REQUIRED = "كلمة المرور مطلوبة"
    EMAIL_REQUIRED = "البريد الإلكتروني مطلوب"
    EMAIL_FORMAT = "صيغة البريد الإلكتروني غير صحيحة"
    TOKEN_REQUIRED = "الرمز مطلوب"
    INVALID_INPUT = "البريد الإلكتروني أو كلمة المرور غير صحيحة"
    USER_TYPE = "نوع المستخدم غير صالح"


# Gate and limiter messages are consumed by API clients rather than shown to
# end users, so they stay in English.
MISSING_AUTH_HEADER = "No authorization header provided"
INVALID_AUTH_HEADER = "Invalid authorization header format"
ROLE_FORBIDDEN = "You do not have permission to access this resource"
ACCESS_DENIED = "Access denied"
PERMISSION_CHECK_FAILED = "Failed to check permissions"
AUTH_RATE_LIMITED = "Too many attempts. Please try again after 15 minutes."
FORGOT_PASSWORD_RATE_LIMITED = (
    "Too many password reset requests. Please try again after 1 hour."
)
INTERNAL_ERROR = "Internal server error"


def permission_denied(action: str, page: str) -> str:
    return f"You do not have {action} permission for {page}"
