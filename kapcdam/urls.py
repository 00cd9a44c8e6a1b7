from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path("admin/", admin.site.urls),
    path("payments/", include("payments.urls")),
    path("donations/", include("donations.urls")),
    path("orders/", include("orders.urls")),
]
