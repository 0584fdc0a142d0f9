from django.urls import include, path

urlpatterns = [
    path("api/ledgers/", include("ledger_core.urls")),
]
