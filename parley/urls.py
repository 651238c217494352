from django.urls import include, path

from chat import views

urlpatterns = [
    path('', views.liveness, name='liveness'),
    path('chat/', views.index, name='index'),
    path('api/', include('chat.urls')),
]
