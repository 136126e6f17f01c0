"""Clinic Onboarding - invite and clinic code backend"""
