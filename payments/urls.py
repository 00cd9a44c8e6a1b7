from django.urls import path

from . import views, webhook

app_name = "payments"
urlpatterns = [
    path("pesapal/ipn", webhook.pesapal_ipn, name="pesapal_ipn"),
    path("pesapal/ipn/", webhook.pesapal_ipn),
    path("pesapal/callback", views.pesapal_callback, name="pesapal_callback"),
]
