"""Service catalog domain - the services customers can book"""
