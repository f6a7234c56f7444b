"""WebQ back-office notification pipeline"""
