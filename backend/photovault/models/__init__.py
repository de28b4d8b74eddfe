# Import all models so Base.metadata is populated for create_all and Alembic autogenerate.
from photovault.models.user import User  # noqa: F401
from photovault.models.session import RefreshToken  # noqa: F401
from photovault.models.audit import AuditLogEvent  # noqa: F401
from photovault.models.photo import Photo, PhotoTag  # noqa: F401
from photovault.models.billing import (  # noqa: F401
    Coupon,
    Invoice,
    PaymentMethod,
    Subscription,
)
from photovault.models.usage import StorageUsageDaily, UsageLog  # noqa: F401
