"""
Employee Request Portal
Blueprint registry.

    health_bp        /api/v1/health/*
    request_bp       /api/v1/requests/*
    notification_bp  /api/v1/notifications, /notification-templates, /email-logs, /scheduler/*
    workflow_bp      /api/v1/workflows/*, /workflow-executions/*
"""
