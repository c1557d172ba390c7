from rest_framework import status
from rest_framework.exceptions import APIException
from rest_framework.views import exception_handler


class LifecycleError(APIException):
    """Base for every typed failure of the listing/bid/offer/job flow.

    Extra keyword arguments are kept as ``context`` and rendered next to
    ``detail`` and ``code`` so clients can build an actionable message.
    """

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "İşlem tamamlanamadı."
    default_code = "lifecycle-error"

    def __init__(self, detail=None, **context):
        super().__init__(detail=detail or self.default_detail, code=self.default_code)
        self.context = context

    def as_payload(self):
        payload = {"detail": str(self.detail), "code": self.default_code}
        payload.update(self.context)
        return payload


class InvalidListing(LifecycleError):
    default_detail = "İlan bilgileri eksik veya geçersiz."
    default_code = "invalid-listing"


class BudgetExceeded(LifecycleError):
    default_detail = "Teklif ilanın bütçe tavanını aşıyor."
    default_code = "budget-exceeded"


class ListingClosed(LifecycleError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "İlan kapalı."
    default_code = "listing-closed"


class DuplicateBid(LifecycleError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Bu ilan için zaten açık bir teklifiniz var."
    default_code = "duplicate-bid"


class InvalidBidState(LifecycleError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Teklif artık beklemede değil."
    default_code = "invalid-bid-state"


class OfferAlreadyActive(LifecycleError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Bu gönderi için zaten aktif bir atama teklifi var."
    default_code = "offer-already-active"


class NotFound(LifecycleError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Kayıt bulunamadı."
    default_code = "not-found"


class Forbidden(LifecycleError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Bu işlem için yetkiniz yok."
    default_code = "forbidden"


class OfferExpired(LifecycleError):
    status_code = status.HTTP_410_GONE
    default_detail = "Atama teklifinin süresi doldu."
    default_code = "offer-expired"


class OfferAlreadyResolved(LifecycleError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Atama teklifi zaten yanıtlandı."
    default_code = "offer-already-resolved"


class CityMismatch(LifecycleError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Kayıtlı şehriniz yükleme şehri ile eşleşmiyor."
    default_code = "city-mismatch"


class AlreadyBound(LifecycleError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Bu gönderiye zaten taşıyıcı atanmış."
    default_code = "already-bound"


class NotBound(LifecycleError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Bu iş size atanmış değil veya bu adım için uygun durumda değil."
    default_code = "not-bound"


def lifecycle_exception_handler(exc, context):
    response = exception_handler(exc, context)
    if response is not None and isinstance(exc, LifecycleError):
        response.data = exc.as_payload()
    return response
