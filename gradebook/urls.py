from django.urls import path
from . import views

app_name = 'gradebook'

urlpatterns = [
    # Reports
    path('reports/students/<int:student_id>/term/<int:term>/', views.student_term_report, name='student_term_report'),
    path('reports/classes/<int:class_id>/term/<int:term>/', views.class_term_report, name='class_term_report'),
    path('reports/students/<int:student_id>/yearly/', views.student_yearly_report, name='student_yearly_report'),
    path('reports/classes/<int:class_id>/yearly/', views.class_yearly_report, name='class_yearly_report'),

    # Live score entry
    path('grades/preview/', views.grade_preview, name='grade_preview'),
]
