from django.urls import include, path

urlpatterns = [
    path("api/provisioning/", include("provisioning.urls")),
]
