from django.urls import path

from tollgate.core.api import scheduled_tasks

app_name = "scheduled"

urlpatterns = [
    path(
        "expire-subscriptions/",
        scheduled_tasks.ExpireSubscriptionsView.as_view(),
        name="expire-subscriptions",
    ),
    path(
        "send-renewal-reminders/",
        scheduled_tasks.SendRenewalRemindersView.as_view(),
        name="send-renewal-reminders",
    ),
]
