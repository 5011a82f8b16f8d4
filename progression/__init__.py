"""Learner progression and scheduling engine"""
