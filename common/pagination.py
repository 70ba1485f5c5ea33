from django.conf import settings
from rest_framework.pagination import PageNumberPagination


class StandardResultsSetPagination(PageNumberPagination):
    """Shared pagination behavior for list endpoints.

    Clients can tune page size with `?page_size=` but values are capped to keep
    payload sizes predictable.
    """

    page_size_query_param = "page_size"
    max_page_size = 200


class LedgerHistoryPagination(PageNumberPagination):
    """Inventory history pages use `?page=&limit=`, newest entries first."""

    page_size_query_param = "limit"

    def __init__(self):
        self.page_size = settings.INVENTORY_HISTORY_PAGE_SIZE
        self.max_page_size = settings.INVENTORY_HISTORY_MAX_PAGE_SIZE
