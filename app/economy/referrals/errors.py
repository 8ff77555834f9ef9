class ReferralError(Exception):
    pass


class ReferralInvalidUserError(ReferralError):
    pass


class ReferralInvalidCodeError(ReferralError):
    pass


class ReferralSelfReferralError(ReferralError):
    pass


class ReferralRateLimitedError(ReferralError):
    pass


class ReferralAlreadyReferredError(ReferralError):
    pass


class ReferralMaxReachedError(ReferralError):
    pass


class ReferralCodeGenerationError(ReferralError):
    pass


class ReferralInvalidCursorError(ReferralError):
    pass
