"""Clinic Onboarding - Services"""
