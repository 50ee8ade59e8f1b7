from rest_framework.pagination import PageNumberPagination


class StandardResultsSetPagination(PageNumberPagination):
    """Shared pagination for purchase order, stock and ledger listings.

    Clients can tune page size with `?page_size=`; values are capped so a
    branch with a long ledger history cannot return unbounded payloads.
    """

    page_size_query_param = "page_size"
    max_page_size = 100
