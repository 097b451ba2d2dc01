"""Enum definitions for member models."""

import enum


class MemberStatus(str, enum.Enum):
    """Lifecycle status of a member."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    EXPIRED = "expired"
    PENDING = "pending"


class Gender(str, enum.Enum):
    MALE = "male"
    FEMALE = "female"


class ContactMethod(str, enum.Enum):
    EMAIL = "email"
    PHONE = "phone"
    SMS = "sms"


class MemberType(str, enum.Enum):
    FULL = "full"
    TRIAL = "trial"
    COLLABORATION = "collaboration"


class UniformSize(str, enum.Enum):
    XS = "XS"
    S = "S"
    M = "M"
    L = "L"
    XL = "XL"


class VestSize(str, enum.Enum):
    V1 = "V1"
    V2 = "V2"
    V2_SMALL_EXT = "V2_SMALL_EXT"
    V2_LARGE_EXT = "V2_LARGE_EXT"
    V2_DOUBLE_EXT = "V2_DOUBLE_EXT"


class HipBeltSize(str, enum.Enum):
    V1 = "V1"
    V2 = "V2"


class ReferralSource(str, enum.Enum):
    INSTAGRAM = "instagram"
    MEMBER_REFERRAL = "member_referral"
    WEBSITE_IB = "website_ib"
    PROSPECTION = "prospection"
    STUDIO = "studio"
    PHONE = "phone"
    CHATBOT = "chatbot"


class TrainingPreference(str, enum.Enum):
    """Only meaningful for female members."""

    MIXED = "mixed"
    WOMEN_ONLY = "women_only"
