"""
messages.py - Mensajes visibles para el usuario (árabe por defecto, inglés)
"""

MESSAGES = {
    "device_id_required": {
        "ar": "معرف الجهاز مطلوب",
        "en": "Device ID is required",
    },
    "invalid_device_id": {
        "ar": "معرف الجهاز غير صالح",
        "en": "Invalid device ID",
    },
    "email_required": {
        "ar": "البريد الإلكتروني مطلوب",
        "en": "Email is required",
    },
    "invalid_email": {
        "ar": "صيغة البريد الإلكتروني غير صحيحة",
        "en": "Invalid email format",
    },
    "invalid_duration": {
        "ar": "مدة الاشتراك غير صالحة",
        "en": "Invalid subscription duration",
    },
    "subscription_id_required": {
        "ar": "معرف الاشتراك مطلوب",
        "en": "Subscription ID is required",
    },
    "already_linked": {
        "ar": "هذا الجهاز مرتبط باشتراك بالفعل",
        "en": "This device is already linked to a subscription",
    },
    "no_active_subscription": {
        "ar": "لم يتم العثور على اشتراك نشط لهذا البريد",
        "en": "No active subscription found for this email",
    },
    "linked": {
        "ar": "تم ربط الاشتراك بنجاح!",
        "en": "Subscription linked successfully!",
    },
    "already_active": {
        "ar": "هذا الإيميل لديه اشتراك نشط بالفعل. استخدم خيار التمديد بدلاً من ذلك.",
        "en": "This email already has an active subscription. Use extend instead.",
    },
    "activated": {
        "ar": "تم تفعيل الاشتراك بنجاح",
        "en": "Subscription activated successfully",
    },
    "activated_pending": {
        "ar": "تم إنشاء الاشتراك. سيتم تفعيله تلقائياً عندما يسجل المستخدم بهذا الإيميل",
        "en": "Subscription created. It will attach automatically when a user registers with this email",
    },
    "extended": {
        "ar": "تم تمديد الاشتراك بنجاح",
        "en": "Subscription extended successfully",
    },
    "cancelled": {
        "ar": "تم إلغاء الاشتراك",
        "en": "Subscription cancelled",
    },
    "cancelled_immediately": {
        "ar": "تم إلغاء الاشتراك فوراً",
        "en": "Subscription cancelled immediately",
    },
    "cancel_at_period_end": {
        "ar": "سيتم إلغاء الاشتراك في نهاية الفترة الحالية",
        "en": "Subscription will be cancelled at the end of the current period",
    },
    "subscription_not_active": {
        "ar": "الاشتراك غير نشط",
        "en": "Subscription is not active",
    },
    "subscription_not_found": {
        "ar": "الاشتراك غير موجود",
        "en": "Subscription not found",
    },
    "unauthorized": {
        "ar": "غير مصرح: المستخدم ليس مسؤولاً",
        "en": "Unauthorized: caller is not an admin",
    },
    "invalid_signature": {
        "ar": "توقيع غير صالح",
        "en": "Invalid signature",
    },
    "webhook_not_configured": {
        "ar": "لم يتم إعداد سر الويب هوك",
        "en": "Webhook secret not configured",
    },
    "payment_unavailable": {
        "ar": "خدمة الدفع غير متاحة حالياً",
        "en": "Payment service is currently unavailable",
    },
    "internal_error": {
        "ar": "حدث خطأ داخلي",
        "en": "Internal server error",
    },
}


def message(key, lang="ar") -> str:
    """Texto del mensaje en el idioma pedido, con el árabe como respaldo"""
    entry = MESSAGES.get(key)
    if entry is None:
        return key
    return entry.get(lang) or entry["ar"]
