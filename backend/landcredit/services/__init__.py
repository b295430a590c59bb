"""Land-Change Credit Engine - Services"""
