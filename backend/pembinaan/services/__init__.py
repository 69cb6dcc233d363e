"""Pembinaan Engine - Services"""
