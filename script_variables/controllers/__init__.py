#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Script Variables Controllers

变量管理器与按剧本缓存的服务注册表
"""
