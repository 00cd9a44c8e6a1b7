from django.urls import path

from . import views

app_name = "orders"
urlpatterns = [
    path("", views.order_create_view, name="create"),
    path("<str:order_number>/pay", views.order_pay_view, name="pay"),
    path("<str:order_number>/retry", views.order_retry_view, name="retry"),
    path("<str:order_number>/cancel-pending", views.order_cancel_pending_view, name="cancel_pending"),
    path("<str:order_number>/cancel", views.order_cancel_view, name="cancel"),
    path("<str:order_number>/status", views.order_status_view, name="status"),
]
