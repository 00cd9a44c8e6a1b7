from django.urls import path

from . import views

app_name = "donations"
urlpatterns = [
    path("", views.donation_create_view, name="create"),
    path("<str:donation_id>/pay", views.donation_pay_view, name="pay"),
    path("<str:donation_id>/status", views.donation_status_view, name="status"),
]
